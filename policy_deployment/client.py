import base64
import itertools
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import base58
import requests

from policy_deployment.constants import (
    AUTHORIZE_UPGRADE_FUNCTION,
    COMMIT_UPGRADE_FUNCTION,
    DEFAULT_GAS_BUDGET,
    EXECUTION_OPTIONS,
    MAX_GAS_PAYMENT_OBJECTS,
    RPC_TIMEOUT,
    SUI_COIN_TYPE,
    SUI_KEYSTORE_FILEPATH,
)
from policy_deployment.exceptions import (
    DigestMismatch,
    InsufficientGas,
    NetworkFailure,
    PolicyRejected,
    TicketMismatch,
    TransactionFailed,
    UpgradeError,
)
from policy_deployment.keystore import Ed25519Keypair, Keystore
from policy_deployment.transaction import (
    ObjectArg,
    ObjectRef,
    OwnedObject,
    SharedObject,
    TransactionBuilder,
)
from policy_deployment.utils import (
    get_active_address,
    get_rpc_url,
    load_client_config,
    normalize_object_id,
)

_FUNCTION_NAME = re.compile(r'function_name: Some\("(\w+)"\)')


def failure_from_status(error: str) -> UpgradeError:
    """Maps the error string of failed transaction effects to an exception."""
    if "DigestDoesNotMatch" in error:
        return DigestMismatch(error)
    if "MoveAbort" in error:
        match = _FUNCTION_NAME.search(error)
        function_name = match.group(1) if match else None
        if function_name == AUTHORIZE_UPGRADE_FUNCTION:
            return PolicyRejected(error)
        if function_name == COMMIT_UPGRADE_FUNCTION:
            return TicketMismatch(error)
    return TransactionFailed(error)


def check_effects(result: Dict[str, Any]) -> Dict[str, Any]:
    """Raises if the executed (or dry-run) transaction did not succeed."""
    status = result.get("effects", {}).get("status", {})
    if status.get("status") != "success":
        raise failure_from_status(status.get("error", "unknown execution failure"))
    return result


class SuiClient:
    """A thin JSON-RPC client for a Sui full node."""

    def __init__(
        self,
        url: str,
        network: Optional[str] = None,
        timeout: int = RPC_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.network = network
        self.timeout = timeout
        self.session = session or requests.Session()
        self._request_ids = itertools.count(1)

    @classmethod
    def for_network(
        cls, network: str, client_config: Optional[dict] = None, **kwargs
    ) -> "SuiClient":
        url = get_rpc_url(network, client_config=client_config)
        return cls(url=url, network=network, **kwargs)

    def _call(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise NetworkFailure(f"{method} request to {self.url} failed: {e}") from e
        except ValueError as e:
            raise NetworkFailure(f"{method} response from {self.url} is not JSON: {e}") from e

        if "error" in data:
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise NetworkFailure(f"RPC error from {method}: {message}")
        return data.get("result")

    #
    # Reads
    #

    def get_object(self, object_id: str) -> Dict[str, Any]:
        object_id = normalize_object_id(object_id)
        response = self._call(
            "sui_getObject", [object_id, {"showOwner": True, "showType": True}]
        )
        if not response or "data" not in response:
            error = (response or {}).get("error", {})
            raise ValueError(f"Object {object_id} not found: {error.get('code', 'unknown')}")
        return response["data"]

    def get_object_arg(self, object_id: str) -> ObjectArg:
        """Resolves an object input to an owned reference or a shared object."""
        data = self.get_object(object_id)
        owner = data.get("owner")
        if isinstance(owner, dict) and "Shared" in owner:
            initial_shared_version = int(owner["Shared"]["initial_shared_version"])
            return SharedObject(
                object_id=normalize_object_id(data["objectId"]),
                initial_shared_version=initial_shared_version,
                mutable=True,
            )
        return OwnedObject(ref=self._object_ref(data))

    @staticmethod
    def _object_ref(data: Dict[str, Any]) -> ObjectRef:
        return ObjectRef(
            object_id=normalize_object_id(data.get("objectId") or data["coinObjectId"]),
            version=int(data["version"]),
            digest=base58.b58decode(data["digest"]),
        )

    def get_reference_gas_price(self) -> int:
        return int(self._call("suix_getReferenceGasPrice", []))

    def get_coins(self, owner: str, coin_type: str = SUI_COIN_TYPE) -> List[Dict[str, Any]]:
        coins, cursor = list(), None
        while True:
            page = self._call(
                "suix_getCoins", [normalize_object_id(owner), coin_type, cursor, None]
            )
            coins.extend(page.get("data", []))
            if not page.get("hasNextPage"):
                return coins
            cursor = page.get("nextCursor")

    def select_gas(self, owner: str, budget: int, exclude: List[str] = ()) -> List[ObjectRef]:
        """Picks gas coins of `owner` whose balances cover `budget`."""
        excluded = {normalize_object_id(object_id) for object_id in exclude}
        coins = [
            c
            for c in self.get_coins(owner)
            if normalize_object_id(c["coinObjectId"]) not in excluded
        ]
        coins.sort(key=lambda c: int(c["balance"]), reverse=True)

        selected, total = list(), 0
        for coin in coins[:MAX_GAS_PAYMENT_OBJECTS]:
            selected.append(self._object_ref(coin))
            total += int(coin["balance"])
            if total >= budget:
                return selected
        raise InsufficientGas(
            f"{owner} owns {total} MIST in gas coins; the gas budget is {budget} MIST."
        )

    #
    # Writes
    #

    def dry_run_transaction_block(self, tx_bytes: bytes) -> Dict[str, Any]:
        return self._call(
            "sui_dryRunTransactionBlock", [base64.b64encode(tx_bytes).decode("ascii")]
        )

    def execute_transaction_block(
        self, tx_bytes: bytes, signatures: List[str], options: Optional[dict] = None
    ) -> Dict[str, Any]:
        return self._call(
            "sui_executeTransactionBlock",
            [
                base64.b64encode(tx_bytes).decode("ascii"),
                signatures,
                options or EXECUTION_OPTIONS,
                "WaitForLocalExecution",
            ],
        )


class RawSigner:
    """Builds, signs and submits transactions for one keypair."""

    def __init__(self, keypair: Ed25519Keypair, client: SuiClient):
        self.keypair = keypair
        self.client = client

    @property
    def address(self) -> str:
        return self.keypair.address

    @property
    def network(self) -> Optional[str]:
        return self.client.network

    def build(self, builder: TransactionBuilder, gas_budget: int = DEFAULT_GAS_BUDGET) -> bytes:
        objects = {
            object_id: self.client.get_object_arg(object_id) for object_id in builder.object_ids
        }
        gas_payment = self.client.select_gas(
            self.address, budget=gas_budget, exclude=builder.object_ids
        )
        return builder.serialize(
            sender=self.address,
            gas_payment=gas_payment,
            gas_price=self.client.get_reference_gas_price(),
            gas_budget=gas_budget,
            objects=objects,
        )

    def sign_and_execute(
        self,
        builder: TransactionBuilder,
        options: Optional[dict] = None,
        gas_budget: Optional[int] = None,
    ) -> Dict[str, Any]:
        tx_bytes = self.build(builder, gas_budget=gas_budget or DEFAULT_GAS_BUDGET)
        signature = self.keypair.sign_transaction(tx_bytes)
        result = self.client.execute_transaction_block(
            tx_bytes, [signature], options=options or EXECUTION_OPTIONS
        )
        return check_effects(result)

    def dry_run(
        self, builder: TransactionBuilder, gas_budget: Optional[int] = None
    ) -> Dict[str, Any]:
        tx_bytes = self.build(builder, gas_budget=gas_budget or DEFAULT_GAS_BUDGET)
        return check_effects(self.client.dry_run_transaction_block(tx_bytes))


def get_signer(
    network: str,
    keystore_filepath: Path = SUI_KEYSTORE_FILEPATH,
    address: Optional[str] = None,
    client_config: Optional[dict] = None,
) -> RawSigner:
    """
    Returns a signer for `address` (the active Sui client address by default)
    connected to `network`. The keypair is looked up before anything is sent
    to the network.
    """
    client_config = client_config if client_config is not None else load_client_config()
    address = address or get_active_address(client_config)
    keypair = Keystore.from_file(keystore_filepath).get_keypair(address)
    client = SuiClient.for_network(network, client_config=client_config)
    return RawSigner(keypair=keypair, client=client)
