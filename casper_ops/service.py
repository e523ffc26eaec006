"""
Operation Service

Facade consumed by the HTTP layer: starts deployments, stakes and bridge
transfers, answers status / estimate / dashboard queries. All state changes
go through the LifecycleOrchestrator.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from .activity import ActivityRecorder, SQLiteActivityRecorder
from .bridge import BridgeRequest
from .chain_client import ChainClient
from .config import OrchestratorConfig, load_config
from .deployment import DeploymentRequest, decode_code
from .economics import EconomicsCalculator, motes_to_cspr
from .errors import UnknownOperation
from .ledger import OperationLedger, SQLiteOperationLedger
from .lifecycle import LifecycleOrchestrator
from .models import Operation, OperationKind, ValidatorSet
from .reporting import bridge_stats, network_staking_stats, staking_summary
from .staking import StakeRequest


class OperationService:
    """
    Casper operation service

    Features:
    - Contract deployment with cost estimate and explorer tracking link
    - Delegated staking with APY / reward projections and withdrawal
    - Cross-chain bridge transfers with fee quotes
    - Dashboard summaries over the operation ledger
    """

    def __init__(self, orchestrator: LifecycleOrchestrator):
        self.orchestrator = orchestrator
        self.config = orchestrator.config
        self.client = orchestrator.client
        self.ledger = orchestrator.ledger
        self.economics = orchestrator.economics

        logger.info(f"Operation service ready on {self.config.chain_name}")

    @classmethod
    def create(
        cls,
        config: Optional[OrchestratorConfig] = None,
        ledger: Optional[OperationLedger] = None,
        activity: Optional[ActivityRecorder] = None,
        chain_clients: Optional[Dict[str, Any]] = None,
    ) -> 'OperationService':
        """
        Wire a service from config; ledger and activity default to SQLite at config.ledger_path
        """
        config = config or load_config()
        client = ChainClient(config)
        ledger = ledger or SQLiteOperationLedger(config.ledger_path)
        activity = activity or SQLiteActivityRecorder(config.ledger_path)
        orchestrator = LifecycleOrchestrator(
            config,
            client,
            ledger,
            activity=activity,
            economics=EconomicsCalculator(config),
            chain_clients=chain_clients,
        )
        return cls(orchestrator)

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def start_deployment(self, owner_key: str, code: Union[bytes, str], name: str) -> Dict:
        operation = await self.orchestrator.start(
            OperationKind.DEPLOYMENT,
            DeploymentRequest(owner_key=owner_key, code=code, name=name),
        )
        payload = operation.payload
        return {
            'handle': operation.id,
            'estimated_cost': payload.estimated_cost_motes,
            'estimated_cost_cspr': motes_to_cspr(payload.estimated_cost_motes),
            'tracking_url': self.config.explorer_deploy_url(payload.deploy_hash),
        }

    def get_deployment_status(self, handle: str) -> Operation:
        operation = self.orchestrator.get_status(handle)
        if operation.kind != OperationKind.DEPLOYMENT:
            raise UnknownOperation(handle)
        return operation

    def estimate_deployment(self, code: Union[bytes, str]) -> Dict:
        size = len(decode_code(code))
        cost = self.economics.estimate_deploy_cost(size)
        return {
            'size_bytes': size,
            'estimated_cost': cost,
            'estimated_cost_cspr': motes_to_cspr(cost),
        }

    # ------------------------------------------------------------------
    # Staking
    # ------------------------------------------------------------------

    async def list_validators(self) -> ValidatorSet:
        """Validators with their delegator APY filled in"""
        validators = await self.client.get_validators()
        for validator in validators:
            validator.apy = self.economics.validator_apy(validator)
        return validators

    async def start_stake(self, owner_key: str, validator_key: str, amount_cspr, lock_days: int) -> Dict:
        operation = await self.orchestrator.start(
            OperationKind.STAKE,
            StakeRequest(owner_key=owner_key, validator_key=validator_key,
                         amount_cspr=amount_cspr, lock_days=lock_days),
        )
        payload = operation.payload
        return {
            'handle': operation.id,
            'apy': payload.apy,
            'estimated_annual_reward': self.economics.estimated_annual_reward(payload.amount_cspr, payload.apy),
            'estimated_daily_reward': self.economics.estimated_daily_reward(payload.amount_cspr, payload.apy),
            'end_date': payload.end_date,
        }

    async def withdraw_stake(self, handle: str, owner_key: Optional[str] = None) -> Dict:
        operation = await self.orchestrator.withdraw(handle, owner_key)
        return {'accepted': True, 'stage': operation.stage.value}

    def staking_summary(self, owner_key: str) -> Dict:
        operations = self.orchestrator.list_operations(owner_key, OperationKind.STAKE)
        return staking_summary(operations, self.economics)

    async def network_staking_stats(self) -> Dict:
        validators = await self.list_validators()
        return network_staking_stats(validators, self.economics)

    # ------------------------------------------------------------------
    # Bridge
    # ------------------------------------------------------------------

    async def start_bridge(
        self,
        owner_key: str,
        source_chain: str,
        dest_chain: str,
        amount_cspr,
        destination_address: Optional[str] = None,
        token: str = "CSPR",
    ) -> Dict:
        operation = await self.orchestrator.start(
            OperationKind.BRIDGE,
            BridgeRequest(
                owner_key=owner_key,
                source_chain=source_chain,
                dest_chain=dest_chain,
                amount_cspr=amount_cspr,
                destination_address=destination_address,
                token=token,
            ),
        )
        payload = operation.payload
        return {
            'handle': operation.id,
            'fee': payload.fee,
            'net_amount': payload.net_amount,
        }

    def estimate_bridge_fee(self, amount_cspr, source_chain: str) -> Dict:
        quote = self.economics.bridge_fee(amount_cspr, source_chain)
        data = quote.to_dict()
        data['total_cost'] = str(Decimal(str(amount_cspr)) + quote.fee)
        return data

    def bridge_stats(self, owner_key: Optional[str] = None) -> Dict:
        if owner_key:
            operations = self.orchestrator.list_operations(owner_key, OperationKind.BRIDGE)
        else:
            operations = self.ledger.list_all(OperationKind.BRIDGE)
        return bridge_stats(operations)

    def supported_chains(self) -> List[Dict]:
        return [
            {
                'id': chain,
                'native': chain == self.config.native_chain,
                'fee_percent': str(fee_percent),
            }
            for chain, fee_percent in self.config.bridge_fee_percent.items()
        ]

    # ------------------------------------------------------------------
    # Generic
    # ------------------------------------------------------------------

    def get_status(self, handle: str) -> Operation:
        return self.orchestrator.get_status(handle)

    def list_operations(self, owner_key: str, kind: Optional[OperationKind] = None) -> List[Operation]:
        return self.orchestrator.list_operations(owner_key, kind)

    async def cancel(self, handle: str, reason: str = "cancelled by request") -> Operation:
        return await self.orchestrator.cancel(handle, reason)

    async def close(self):
        """Stop polling and release chain client and storage"""
        await self.orchestrator.shutdown()
        await self.client.close()
        self.ledger.close()
        close_activity = getattr(self.orchestrator.activity, 'close', None)
        if close_activity is not None:
            close_activity()
        logger.info("✓ Operation service closed")

    def resume(self) -> int:
        """Restart polling of operations left unfinished by a previous process"""
        return self.orchestrator.resume()

    async def __aenter__(self) -> 'OperationService':
        self.resume()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
