"""
Casper Operations

Asynchronous orchestrator for long-running on-chain operations on Casper:
contract deployments, delegated stakes and cross-chain bridge transfers.

Components:
- chain_client: Failover JSON-RPC client for Casper nodes
- economics: Deploy cost, validator APY, staking yield and bridge fees
- ledger: SQLite / in-memory operation ledger
- lifecycle: Polling engine with per-operation locks and bounded retries
- deployment / staking / bridge: Per-kind lifecycle definitions
- activity: Human-readable audit trail
- reporting: pandas dashboards over the ledger
- service: Facade for the HTTP layer

Lifecycles:
- Deployment: created -> pending -> succeeded | failed
- Stake: created -> pending -> active -> unstaking -> completed | failed
- Bridge: created -> initiated -> locked -> minting -> completed | failed
"""

from .activity import (
    ActivityItem,
    ActivityRecorder,
    InMemoryActivityRecorder,
    SQLiteActivityRecorder,
)
from .bridge import (
    BridgeLifecycle,
    BridgeRequest,
)
from .chain_client import (
    ChainClient,
    account_hash,
)
from .config import (
    OrchestratorConfig,
    load_config,
)
from .deployment import (
    DeploymentLifecycle,
    DeploymentRequest,
)
from .economics import (
    BridgeFee,
    EconomicsCalculator,
    cspr_to_motes,
    motes_to_cspr,
)
from .errors import (
    AllEndpointsUnavailable,
    InsufficientBalance,
    InvalidPayload,
    LockNotElapsed,
    OperationError,
    PreconditionFailed,
    RemoteError,
    UnknownOperation,
    ValidationError,
)
from .ledger import (
    InMemoryOperationLedger,
    OperationLedger,
    SQLiteOperationLedger,
)
from .lifecycle import (
    LifecycleDefinition,
    LifecycleOrchestrator,
)
from .models import (
    Operation,
    OperationKind,
    OperationState,
    OperationStatus,
    Stage,
    Validator,
    ValidatorSet,
)
from .service import OperationService
from .staking import (
    StakeLifecycle,
    StakeRequest,
)

__all__ = [
    # Service
    'OperationService',

    # Orchestration
    'LifecycleOrchestrator',
    'LifecycleDefinition',
    'DeploymentLifecycle',
    'DeploymentRequest',
    'StakeLifecycle',
    'StakeRequest',
    'BridgeLifecycle',
    'BridgeRequest',

    # Chain access
    'ChainClient',
    'account_hash',

    # Economics
    'EconomicsCalculator',
    'BridgeFee',
    'cspr_to_motes',
    'motes_to_cspr',

    # Storage
    'OperationLedger',
    'InMemoryOperationLedger',
    'SQLiteOperationLedger',
    'ActivityRecorder',
    'ActivityItem',
    'InMemoryActivityRecorder',
    'SQLiteActivityRecorder',

    # Model
    'Operation',
    'OperationKind',
    'OperationState',
    'OperationStatus',
    'Stage',
    'Validator',
    'ValidatorSet',

    # Configuration
    'OrchestratorConfig',
    'load_config',

    # Errors
    'OperationError',
    'ValidationError',
    'InvalidPayload',
    'InsufficientBalance',
    'PreconditionFailed',
    'LockNotElapsed',
    'UnknownOperation',
    'AllEndpointsUnavailable',
    'RemoteError',
]

__version__ = '1.0.0'
__author__ = 'Casper Operations'
__description__ = 'Asynchronous on-chain operation orchestrator for Casper'
