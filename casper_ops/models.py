"""
Operation Data Model

Operation records and their kind-specific payload / result variants.
Each kind carries its own dataclasses; the ledger stores them as plain
dicts via to_dict() / from_dict().
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Type, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _dec(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


class OperationKind(str, Enum):
    DEPLOYMENT = "deployment"
    STAKE = "stake"
    BRIDGE = "bridge"


class Stage(str, Enum):
    CREATED = "created"
    PENDING = "pending"
    # Stake
    ACTIVE = "active"
    UNSTAKING = "unstaking"
    # Bridge
    INITIATED = "initiated"
    LOCKED = "locked"
    MINTING = "minting"
    # Terminal
    SUCCEEDED = "succeeded"
    COMPLETED = "completed"
    FAILED = "failed"


class OperationState(str, Enum):
    """Remote execution state reported by the chain"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class OperationStatus:
    """Answer of ChainClient.get_operation_status"""
    handle: str
    state: OperationState
    cost_motes: Optional[int] = None
    block_ref: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def pending(cls, handle: str) -> 'OperationStatus':
        return cls(handle=handle, state=OperationState.PENDING)

    @classmethod
    def succeeded(cls, handle: str, cost_motes: Optional[int] = None,
                  block_ref: Optional[str] = None) -> 'OperationStatus':
        return cls(handle=handle, state=OperationState.SUCCEEDED,
                   cost_motes=cost_motes, block_ref=block_ref)

    @classmethod
    def failed(cls, handle: str, reason: str, cost_motes: Optional[int] = None,
               block_ref: Optional[str] = None) -> 'OperationStatus':
        return cls(handle=handle, state=OperationState.FAILED, reason=reason,
                   cost_motes=cost_motes, block_ref=block_ref)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

@dataclass
class DeploymentPayload:
    contract_name: str
    code_size_bytes: int
    code_hash: str
    deploy_hash: str
    estimated_cost_motes: int

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['estimated_cost_motes'] = str(self.estimated_cost_motes)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'DeploymentPayload':
        return cls(
            contract_name=data['contract_name'],
            code_size_bytes=int(data['code_size_bytes']),
            code_hash=data['code_hash'],
            deploy_hash=data['deploy_hash'],
            estimated_cost_motes=int(data['estimated_cost_motes']),
        )


@dataclass
class StakePayload:
    validator_key: str
    amount_cspr: Decimal
    lock_days: int
    apy: float
    start_date: datetime
    end_date: datetime
    delegate_hash: str
    undelegate_hash: Optional[str] = None
    withdraw_requested_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            'validator_key': self.validator_key,
            'amount_cspr': str(self.amount_cspr),
            'lock_days': self.lock_days,
            'apy': self.apy,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'delegate_hash': self.delegate_hash,
            'undelegate_hash': self.undelegate_hash,
            'withdraw_requested_at': _iso(self.withdraw_requested_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'StakePayload':
        return cls(
            validator_key=data['validator_key'],
            amount_cspr=_dec(data['amount_cspr']),
            lock_days=int(data['lock_days']),
            apy=float(data['apy']),
            start_date=_parse_dt(data['start_date']),
            end_date=_parse_dt(data['end_date']),
            delegate_hash=data['delegate_hash'],
            undelegate_hash=data.get('undelegate_hash'),
            withdraw_requested_at=_parse_dt(data.get('withdraw_requested_at')),
        )


@dataclass
class BridgePayload:
    source_chain: str
    dest_chain: str
    amount_cspr: Decimal
    fee: Decimal
    net_amount: Decimal
    token: str
    source_tx_hash: str
    destination_address: Optional[str] = None
    dest_tx_hash: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'source_chain': self.source_chain,
            'dest_chain': self.dest_chain,
            'amount_cspr': str(self.amount_cspr),
            'fee': str(self.fee),
            'net_amount': str(self.net_amount),
            'token': self.token,
            'source_tx_hash': self.source_tx_hash,
            'destination_address': self.destination_address,
            'dest_tx_hash': self.dest_tx_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'BridgePayload':
        return cls(
            source_chain=data['source_chain'],
            dest_chain=data['dest_chain'],
            amount_cspr=_dec(data['amount_cspr']),
            fee=_dec(data['fee']),
            net_amount=_dec(data['net_amount']),
            token=data['token'],
            source_tx_hash=data['source_tx_hash'],
            destination_address=data.get('destination_address'),
            dest_tx_hash=data.get('dest_tx_hash'),
        )


# ---------------------------------------------------------------------------
# Results (set only on the success-terminal stage)
# ---------------------------------------------------------------------------

@dataclass
class DeploymentResult:
    block_ref: Optional[str]
    gas_used_motes: Optional[int]
    explorer_link: str

    def to_dict(self) -> Dict:
        return {
            'block_ref': self.block_ref,
            'gas_used_motes': None if self.gas_used_motes is None else str(self.gas_used_motes),
            'explorer_link': self.explorer_link,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'DeploymentResult':
        gas = data.get('gas_used_motes')
        return cls(
            block_ref=data.get('block_ref'),
            gas_used_motes=None if gas is None else int(gas),
            explorer_link=data['explorer_link'],
        )


@dataclass
class StakeResult:
    principal_cspr: Decimal
    accumulated_rewards_cspr: Decimal
    days_staked: int
    block_ref: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'principal_cspr': str(self.principal_cspr),
            'accumulated_rewards_cspr': str(self.accumulated_rewards_cspr),
            'days_staked': self.days_staked,
            'block_ref': self.block_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'StakeResult':
        return cls(
            principal_cspr=_dec(data['principal_cspr']),
            accumulated_rewards_cspr=_dec(data['accumulated_rewards_cspr']),
            days_staked=int(data['days_staked']),
            block_ref=data.get('block_ref'),
        )


@dataclass
class BridgeResult:
    dest_tx_hash: str
    received_amount: Decimal
    block_ref: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'dest_tx_hash': self.dest_tx_hash,
            'received_amount': str(self.received_amount),
            'block_ref': self.block_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'BridgeResult':
        return cls(
            dest_tx_hash=data['dest_tx_hash'],
            received_amount=_dec(data['received_amount']),
            block_ref=data.get('block_ref'),
        )


Payload = Union[DeploymentPayload, StakePayload, BridgePayload]
Result = Union[DeploymentResult, StakeResult, BridgeResult]

PAYLOAD_TYPES: Dict[OperationKind, Type] = {
    OperationKind.DEPLOYMENT: DeploymentPayload,
    OperationKind.STAKE: StakePayload,
    OperationKind.BRIDGE: BridgePayload,
}

RESULT_TYPES: Dict[OperationKind, Type] = {
    OperationKind.DEPLOYMENT: DeploymentResult,
    OperationKind.STAKE: StakeResult,
    OperationKind.BRIDGE: BridgeResult,
}


@dataclass
class Operation:
    """A tracked long-running action and its lifecycle stage"""
    id: str
    kind: OperationKind
    owner_key: str
    stage: Stage
    payload: Payload
    created_at: datetime = field(default_factory=utcnow)
    stage_entered_at: datetime = field(default_factory=utcnow)
    last_polled_at: Optional[datetime] = None
    terminal_at: Optional[datetime] = None
    attempts: int = 0
    result: Optional[Result] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.terminal_at is not None

    def snapshot(self) -> 'Operation':
        """Copy safe to hand out to readers"""
        return replace(self, payload=replace(self.payload),
                       result=replace(self.result) if self.result else None)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'kind': self.kind.value,
            'owner_key': self.owner_key,
            'stage': self.stage.value,
            'payload': self.payload.to_dict(),
            'created_at': _iso(self.created_at),
            'stage_entered_at': _iso(self.stage_entered_at),
            'last_polled_at': _iso(self.last_polled_at),
            'terminal_at': _iso(self.terminal_at),
            'attempts': self.attempts,
            'result': self.result.to_dict() if self.result else None,
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Operation':
        kind = OperationKind(data['kind'])
        result = data.get('result')
        return cls(
            id=data['id'],
            kind=kind,
            owner_key=data['owner_key'],
            stage=Stage(data['stage']),
            payload=PAYLOAD_TYPES[kind].from_dict(data['payload']),
            created_at=_parse_dt(data['created_at']),
            stage_entered_at=_parse_dt(data.get('stage_entered_at') or data['created_at']),
            last_polled_at=_parse_dt(data.get('last_polled_at')),
            terminal_at=_parse_dt(data.get('terminal_at')),
            attempts=int(data.get('attempts', 0)),
            result=RESULT_TYPES[kind].from_dict(result) if result else None,
            error=data.get('error'),
        )


@dataclass
class Validator:
    """Validator as read from the auction state; apy is derived per query"""
    public_key: str
    total_stake_motes: int
    commission_percent: float
    is_active: bool
    delegators_count: int = 0
    apy: Optional[float] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['total_stake_motes'] = str(self.total_stake_motes)
        return data


@dataclass
class ValidatorSet:
    """Validators plus a marker telling live network data from the sandbox list"""
    validators: List[Validator]
    synthetic: bool = False
    reason: Optional[str] = None

    def find(self, public_key: str) -> Optional[Validator]:
        key = public_key.lower()
        for validator in self.validators:
            if validator.public_key.lower() == key:
                return validator
        return None

    def __iter__(self):
        return iter(self.validators)

    def __len__(self):
        return len(self.validators)


@dataclass
class BalanceResult:
    """Account balance; degraded=True means zero was substituted for an unknown value"""
    public_key: str
    account_hash: str
    motes: int
    degraded: bool = False
    reason: Optional[str] = None

    @property
    def cspr(self) -> Decimal:
        return Decimal(self.motes) / Decimal(1_000_000_000)


@dataclass
class NetworkStatus:
    chain_name: str
    block_height: int
    era: int
    state_root_hash: str
    last_block_time: Optional[str]
    is_online: bool
    degraded: bool = False
