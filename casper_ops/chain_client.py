"""
Chain Client

Failover JSON-RPC gateway to Casper-compatible nodes.

Features:
- Ordered endpoint failover for connectivity / parse failures
- Immediate failure on node-reported (application) errors
- Degraded-but-labelled answers for balances, validators and network status
- Deploy execution status normalised to Pending / Succeeded / Failed
"""

import asyncio
import hashlib
from typing import Any, Dict, List, Optional, Union

import aiohttp
from loguru import logger

from .config import OrchestratorConfig
from .errors import AllEndpointsUnavailable, RemoteError
from .models import (
    BalanceResult,
    NetworkStatus,
    OperationStatus,
    Validator,
    ValidatorSet,
)


Params = Union[List[Any], Dict[str, Any]]

# Node error codes meaning "not known yet" rather than "rejected"
DEPLOY_NOT_FOUND_CODES = {-32000}
DEPLOY_NOT_FOUND_MESSAGES = ('no such deploy', 'deploy not found')

# Node answers to state_get_account_info meaning "no such account" (a confirmed zero).
# Matched on the message: the query-failed code also covers storage faults.
ACCOUNT_NOT_FOUND_MESSAGES = ('valuenotfound', 'value not found', 'account not found', 'no such account')

KEY_ALGORITHMS = {
    '01': 'ed25519',
    '02': 'secp256k1',
}

MAX_VALIDATORS = 20

# Illustrative validators for sandbox/offline development. Never live data:
# get_validators() returns them with synthetic=True.
SANDBOX_VALIDATORS = [
    Validator(
        public_key="01a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a1",
        total_stake_motes=50_000_000_000_000,
        commission_percent=5,
        is_active=True,
        delegators_count=42,
    ),
    Validator(
        public_key="01b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a1b2",
        total_stake_motes=48_000_000_000_000,
        commission_percent=7,
        is_active=True,
        delegators_count=38,
    ),
    Validator(
        public_key="01c3d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a1b2c3",
        total_stake_motes=45_000_000_000_000,
        commission_percent=6,
        is_active=True,
        delegators_count=35,
    ),
    Validator(
        public_key="01d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a1b2c3d4",
        total_stake_motes=42_000_000_000_000,
        commission_percent=8,
        is_active=True,
        delegators_count=31,
    ),
    Validator(
        public_key="01e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a1b2c3d4e5",
        total_stake_motes=40_000_000_000_000,
        commission_percent=5,
        is_active=True,
        delegators_count=28,
    ),
]


def is_account_not_found(error: RemoteError) -> bool:
    """True when the node says the account does not exist, as opposed to failing"""
    message = error.remote_message.lower()
    return any(m in message for m in ACCOUNT_NOT_FOUND_MESSAGES)


def account_hash(public_key_hex: str) -> str:
    """
    Derive the account hash of a Casper public key

    blake2b-256 over the algorithm name, a zero separator and the raw key
    bytes. Unknown prefixes are returned unhashed.
    """
    algorithm = KEY_ALGORITHMS.get(public_key_hex[:2])
    if algorithm is None:
        return f"account-hash-{public_key_hex}"

    try:
        key_bytes = bytes.fromhex(public_key_hex[2:])
    except ValueError:
        return f"account-hash-{public_key_hex}"

    digest = hashlib.blake2b(algorithm.encode() + b'\x00' + key_bytes, digest_size=32)
    return f"account-hash-{digest.hexdigest()}"


class ChainClient:
    """
    Typed call surface over a flaky remote RPC

    Only local state is the monotonic request-id counter (plus the lazily
    created HTTP session).
    """

    def __init__(self, config: OrchestratorConfig):
        """
        Initialize chain client

        Args:
            config: Orchestrator config (endpoints, timeout, chain name)
        """
        self.endpoints: List[str] = list(config.endpoints)
        self.timeout = aiohttp.ClientTimeout(total=config.rpc_timeout_seconds)
        self.chain_name = config.chain_name
        self.request_id = 0
        self._session: Optional[aiohttp.ClientSession] = None

        logger.info(f"Chain client initialized with {len(self.endpoints)} endpoints")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _post(self, endpoint: str, body: Dict) -> Any:
        """POST one JSON-RPC body; raises on transport, HTTP status or JSON errors"""
        session = await self._get_session()
        async with session.post(endpoint, json=body) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def call(self, method: str, params: Optional[Params] = None) -> Any:
        """
        Issue a JSON-RPC call, failing over across endpoints

        Args:
            method: RPC method name
            params: Positional list or named dict

        Returns:
            The response's result field

        Raises:
            RemoteError: node reported an application error (no failover)
            AllEndpointsUnavailable: every endpoint failed at transport/parse level
        """
        self.request_id += 1
        request_id = self.request_id
        body = {
            'jsonrpc': '2.0',
            'id': request_id,
            'method': method,
            'params': params if params is not None else [],
        }

        errors = []
        for endpoint in self.endpoints:
            try:
                data = await self._post(endpoint, body)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, OSError) as e:
                logger.warning(f"RPC {method} to {endpoint} failed: {str(e)[:200]}")
                errors.append(f"{endpoint}: {type(e).__name__}")
                continue

            if not isinstance(data, dict):
                logger.warning(f"RPC {method} to {endpoint} returned malformed response")
                errors.append(f"{endpoint}: malformed response")
                continue

            error = data.get('error')
            if error is not None:
                if isinstance(error, dict):
                    raise RemoteError(_error_code(error.get('code')), str(error.get('message', '')))
                raise RemoteError(0, str(error))

            if 'result' not in data or data.get('id') not in (None, request_id):
                logger.warning(f"RPC {method} to {endpoint} returned malformed response")
                errors.append(f"{endpoint}: malformed response")
                continue

            logger.debug(f"RPC {method} #{request_id} answered by {endpoint}")
            return data['result']

        raise AllEndpointsUnavailable(method, errors)

    # ------------------------------------------------------------------
    # Typed calls
    # ------------------------------------------------------------------

    async def get_state_root_hash(self) -> str:
        result = _as_dict("chain_get_state_root_hash", await self.call("chain_get_state_root_hash"))
        state_root_hash = result.get('state_root_hash')
        if not state_root_hash:
            raise ValueError("state root hash missing from response")
        return state_root_hash

    async def get_balance(self, public_key_hex: str) -> BalanceResult:
        """
        Fetch an account's main purse balance

        Never raises. A missing account or purse is a confirmed zero; any
        failure to get a definite answer yields zero with degraded=True.
        """
        acc_hash = account_hash(public_key_hex)

        try:
            state_root_hash = await self.get_state_root_hash()

            try:
                account_info = await self.call(
                    "state_get_account_info",
                    {'public_key': public_key_hex, 'block_identifier': None},
                )
            except RemoteError as e:
                if not is_account_not_found(e):
                    raise
                logger.debug(f"Account {public_key_hex[:10]}... not found: {e}")
                return BalanceResult(public_key_hex, acc_hash, 0, degraded=False,
                                     reason="account not found")

            account = _as_dict("state_get_account_info", account_info).get('account')
            main_purse = _as_dict("state_get_account_info", account).get('main_purse')
            if not main_purse:
                return BalanceResult(public_key_hex, acc_hash, 0, degraded=False,
                                     reason="account has no main purse")

            balance = await self.call(
                "state_get_balance",
                {'state_root_hash': state_root_hash, 'purse_uref': main_purse},
            )
            motes = int(_as_dict("state_get_balance", balance).get('balance_value', 0))
            return BalanceResult(public_key_hex, acc_hash, motes)

        except (AllEndpointsUnavailable, RemoteError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"⚠ Balance for {public_key_hex[:10]}... unavailable, reporting degraded zero: {e}")
            return BalanceResult(public_key_hex, acc_hash, 0, degraded=True, reason=str(e))

    async def get_validators(self) -> ValidatorSet:
        """
        Fetch validators from the auction state

        Falls back to SANDBOX_VALIDATORS (synthetic=True) when the call fails
        or returns no bids.
        """
        reason = "auction state returned no bids"
        try:
            auction_info = await self.call("state_get_auction_info")
            bids = ((auction_info or {}).get('auction_state') or {}).get('bids') or []

            validators = []
            for bid in bids[:MAX_VALIDATORS]:
                info = bid.get('bid') or {}
                validators.append(Validator(
                    public_key=bid.get('public_key', ''),
                    total_stake_motes=int(info.get('staked_amount') or 0),
                    commission_percent=float(info.get('delegation_rate') or 0),
                    is_active=not info.get('inactive', False),
                    delegators_count=len(info.get('delegators') or []),
                ))

            if validators:
                return ValidatorSet(validators)

        except (AllEndpointsUnavailable, RemoteError, ValueError, TypeError, AttributeError) as e:
            reason = str(e)
            logger.warning(f"Failed to get validators: {e}")

        logger.warning(f"⚠ Using synthetic sandbox validator list ({reason})")
        return ValidatorSet(
            [Validator(**vars(v)) for v in SANDBOX_VALIDATORS],
            synthetic=True,
            reason=reason,
        )

    async def get_operation_status(self, handle: str) -> OperationStatus:
        """
        Query the execution result of a deploy

        Raises:
            AllEndpointsUnavailable: connectivity failure (caller may retry)
            RemoteError: node rejected the query for a reason other than
                "deploy not known yet"
        """
        try:
            result = await self.call("info_get_deploy", {'deploy_hash': handle})
        except RemoteError as e:
            message = e.remote_message.lower()
            if e.remote_code in DEPLOY_NOT_FOUND_CODES or any(m in message for m in DEPLOY_NOT_FOUND_MESSAGES):
                logger.debug(f"Deploy {handle[:12]}... not known to node yet")
                return OperationStatus.pending(handle)
            raise

        result = result or {}
        if not result.get('deploy'):
            return OperationStatus.pending(handle)

        # casper-node 2.x
        execution_info = result.get('execution_info')
        if execution_info:
            block_ref = execution_info.get('block_hash')
            execution = execution_info.get('execution_result') or {}
            execution = execution.get('Version2') or execution.get('Version1') or execution
            if not execution:
                return OperationStatus.pending(handle)
            error_message = execution.get('error_message')
            cost = _as_int(execution.get('cost') or execution.get('consumed'))
            if error_message:
                return OperationStatus.failed(handle, error_message, cost, block_ref)
            return OperationStatus.succeeded(handle, cost, block_ref)

        # casper-node 1.x
        execution_results = result.get('execution_results') or []
        if not execution_results:
            return OperationStatus.pending(handle)

        first = execution_results[0]
        block_ref = first.get('block_hash')
        outcome = first.get('result') or {}
        if 'Success' in outcome:
            return OperationStatus.succeeded(handle, _as_int(outcome['Success'].get('cost')), block_ref)
        if 'Failure' in outcome:
            failure = outcome['Failure'] or {}
            return OperationStatus.failed(
                handle,
                failure.get('error_message') or "Deploy failed on chain",
                _as_int(failure.get('cost')),
                block_ref,
            )
        return OperationStatus.pending(handle)

    async def get_network_status(self) -> NetworkStatus:
        """Latest block header summary; degraded offline status on failure"""
        try:
            result = await self.call("chain_get_block")
            header = (((result or {}).get('block') or {}).get('header')) or {}
            return NetworkStatus(
                chain_name=self.chain_name,
                block_height=int(header.get('height') or 0),
                era=int(header.get('era_id') or 0),
                state_root_hash=header.get('state_root_hash') or "",
                last_block_time=header.get('timestamp'),
                is_online=True,
            )
        except (AllEndpointsUnavailable, RemoteError, ValueError, TypeError) as e:
            logger.warning(f"Failed to get network status: {e}")
            return NetworkStatus(
                chain_name=self.chain_name,
                block_height=0,
                era=0,
                state_root_hash="",
                last_block_time=None,
                is_online=False,
                degraded=True,
            )

    async def get_staking_info(self, public_key_hex: str) -> Dict:
        """Delegations made by a key, read from the auction bids"""
        try:
            auction_info = await self.call("state_get_auction_info")
        except (AllEndpointsUnavailable, RemoteError) as e:
            logger.warning(f"Failed to get staking info: {e}")
            return {'total_staked_motes': 0, 'delegations': [], 'degraded': True}

        key = public_key_hex.lower()
        delegations = []
        total = 0
        for bid in ((auction_info or {}).get('auction_state') or {}).get('bids') or []:
            for delegator in (bid.get('bid') or {}).get('delegators') or []:
                if str(delegator.get('public_key', '')).lower() == key:
                    amount = int(delegator.get('staked_amount') or 0)
                    delegations.append({'validator': bid.get('public_key'), 'amount_motes': amount})
                    total += amount

        return {'total_staked_motes': total, 'delegations': delegations, 'degraded': False}

    async def close(self):
        """Close the HTTP session"""
        if self._session is not None and not self._session.closed:
            try:
                await self._session.close()
                logger.debug("✓ Chain client session closed")
            except (RuntimeError, aiohttp.ClientError) as e:
                logger.debug(f"Error closing chain client session: {e}")
        self._session = None


def _as_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _error_code(value) -> int:
    code = _as_int(value)
    return code if code is not None else 0


def _as_dict(method: str, result) -> Dict[str, Any]:
    if result is None:
        return {}
    if not isinstance(result, dict):
        raise ValueError(f"{method} returned a malformed result")
    return result
