import base64
import json as jsonlib
import subprocess

import base58
import pytest
import requests
from nacl.signing import VerifyKey

from policy_deployment.client import (
    RawSigner,
    SuiClient,
    check_effects,
    failure_from_status,
    get_signer,
)
from policy_deployment.exceptions import (
    DigestMismatch,
    InsufficientGas,
    KeyNotFound,
    NetworkFailure,
    PolicyRejected,
    TicketMismatch,
    TransactionFailed,
)
from policy_deployment.keystore import blake2b_256
from policy_deployment.transaction import OwnedObject, SharedObject, TransactionBuilder
from policy_deployment.utils import get_active_address, normalize_object_id

URL = "http://127.0.0.1:9000"
POLICY_ID = normalize_object_id("0x6f9e")
OBJECT_DIGEST = base58.b58encode(b"\x03" * 32).decode()

MOVE_ABORT = (
    "MoveAbort(MoveLocation { module: ModuleId { address: 911a, "
    'name: Identifier("day_of_week") }, function: 1, instruction: 12, '
    'function_name: Some("{function}") }, 0) in command 0'
)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    """Answers JSON-RPC requests from a method -> handler table."""

    def __init__(self, handlers):
        self.handlers = handlers
        self.requests = list()

    def post(self, url, json, timeout):
        self.requests.append(json)
        handler = self.handlers[json["method"]]
        if isinstance(handler, FakeResponse):
            return handler
        result = handler(*json["params"]) if callable(handler) else handler
        return FakeResponse({"jsonrpc": "2.0", "id": json["id"], "result": result})


def coin(object_id, balance):
    return {
        "coinObjectId": normalize_object_id(object_id),
        "version": "4",
        "digest": OBJECT_DIGEST,
        "balance": str(balance),
    }


def client_with(handlers):
    return SuiClient(url=URL, network="localnet", session=FakeSession(handlers))


def test_call_returns_result():
    client = client_with({"suix_getReferenceGasPrice": "1000"})
    assert client.get_reference_gas_price() == 1000
    assert client.get_reference_gas_price() == 1000

    first, second = client.session.requests
    assert first["jsonrpc"] == "2.0"
    assert first["params"] == []
    assert second["id"] == first["id"] + 1


def test_network_failures():
    def unreachable(*params):
        raise requests.ConnectionError("connection refused")

    session = FakeSession({})
    session.post = lambda url, json, timeout: unreachable()
    client = SuiClient(url=URL, session=session)
    with pytest.raises(NetworkFailure, match="connection refused"):
        client.get_reference_gas_price()

    client = client_with({"suix_getReferenceGasPrice": FakeResponse({}, status_code=503)})
    with pytest.raises(NetworkFailure, match="503"):
        client.get_reference_gas_price()

    client = client_with({"suix_getReferenceGasPrice": FakeResponse(ValueError("html"))})
    with pytest.raises(NetworkFailure, match="not JSON"):
        client.get_reference_gas_price()

    rpc_error = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad params"}}
    client = client_with({"suix_getReferenceGasPrice": FakeResponse(rpc_error)})
    with pytest.raises(NetworkFailure, match="bad params"):
        client.get_reference_gas_price()


def test_failure_from_status():
    authorize_abort = MOVE_ABORT.replace("{function}", "authorize_upgrade")
    commit_abort = MOVE_ABORT.replace("{function}", "commit_upgrade")
    digest_error = "PackageUpgradeError { upgrade_error: DigestDoesNotMatch { digest: [1, 2] } }"

    assert isinstance(failure_from_status(authorize_abort), PolicyRejected)
    assert isinstance(failure_from_status(commit_abort), TicketMismatch)
    assert isinstance(failure_from_status(digest_error), DigestMismatch)
    assert isinstance(failure_from_status("InsufficientGas"), TransactionFailed)


def test_check_effects():
    success = {"effects": {"status": {"status": "success"}}}
    assert check_effects(success) is success

    failure = {"effects": {"status": {"status": "failure", "error": "InsufficientGas"}}}
    with pytest.raises(TransactionFailed, match="InsufficientGas"):
        check_effects(failure)


def test_get_object_arg():
    owned = {
        "objectId": POLICY_ID,
        "version": "12",
        "digest": OBJECT_DIGEST,
        "owner": {"AddressOwner": "0xa"},
    }
    client = client_with({"sui_getObject": {"data": owned}})
    object_arg = client.get_object_arg(POLICY_ID)
    assert isinstance(object_arg, OwnedObject)
    assert object_arg.ref.version == 12
    assert object_arg.ref.digest == b"\x03" * 32

    shared = dict(owned, owner={"Shared": {"initial_shared_version": 3}})
    client = client_with({"sui_getObject": {"data": shared}})
    assert client.get_object_arg(POLICY_ID) == SharedObject(POLICY_ID, 3, True)

    client = client_with({"sui_getObject": {"error": {"code": "notExists"}}})
    with pytest.raises(ValueError, match="notExists"):
        client.get_object(POLICY_ID)


def test_select_gas():
    pages = {
        None: {
            "data": [coin("0x1a", 50), coin("0x1b", 400)],
            "hasNextPage": True,
            "nextCursor": "c",
        },
        "c": {"data": [coin("0x1c", 300)], "hasNextPage": False, "nextCursor": None},
    }
    client = client_with({"suix_getCoins": lambda owner, coin_type, cursor, limit: pages[cursor]})

    selected = client.select_gas("0xa", budget=600)
    assert [ref.object_id for ref in selected] == [
        normalize_object_id("0x1b"),
        normalize_object_id("0x1c"),
    ]

    selected = client.select_gas("0xa", budget=300, exclude=["0x1b"])
    assert [ref.object_id for ref in selected] == [normalize_object_id("0x1c")]

    with pytest.raises(InsufficientGas):
        client.select_gas("0xa", budget=10_000)


def test_sign_and_execute(deployer_keypair):
    submitted = dict()

    def execute(tx_bytes, signatures, options, request_type):
        submitted.update(tx_bytes=tx_bytes, signatures=signatures, request_type=request_type)
        return {"digest": "tx", "effects": {"status": {"status": "success"}}, "objectChanges": []}

    owned = {"objectId": POLICY_ID, "version": "2", "digest": OBJECT_DIGEST, "owner": {}}
    client = client_with(
        {
            "sui_getObject": {"data": owned},
            "suix_getCoins": {"data": [coin("0x1a", 10**9)], "hasNextPage": False},
            "suix_getReferenceGasPrice": "750",
            "sui_executeTransactionBlock": execute,
        }
    )
    signer = RawSigner(deployer_keypair, client)
    assert signer.network == "localnet"

    tx = TransactionBuilder()
    tx.move_call("0x2::day_of_week::authorize_upgrade", [tx.object(POLICY_ID)])
    result = signer.sign_and_execute(tx, gas_budget=5000)
    assert result["digest"] == "tx"
    assert submitted["request_type"] == "WaitForLocalExecution"

    tx_bytes = base64.b64decode(submitted["tx_bytes"])
    (signature,) = submitted["signatures"]
    serialized = base64.b64decode(signature)
    VerifyKey(serialized[65:]).verify(blake2b_256(b"\x00\x00\x00" + tx_bytes), serialized[1:65])
    # gas price and budget close the gas data, followed by the expiration
    assert tx_bytes[-17:] == (750).to_bytes(8, "little") + (5000).to_bytes(8, "little") + b"\x00"


def test_sign_and_execute_failure(deployer_keypair):
    failure = {"status": "failure", "error": MOVE_ABORT.replace("{function}", "authorize_upgrade")}
    client = client_with(
        {
            "suix_getCoins": {"data": [coin("0x1a", 10**9)], "hasNextPage": False},
            "suix_getReferenceGasPrice": "750",
            "sui_executeTransactionBlock": {"digest": "tx", "effects": {"status": failure}},
        }
    )
    tx = TransactionBuilder()
    tx.move_call("0x2::m::f", [tx.pure(1, "u8")])
    with pytest.raises(PolicyRejected):
        RawSigner(deployer_keypair, client).sign_and_execute(tx)


def test_get_signer(tmp_path, deployer_keypair, cosigner_keypair):
    keystore_filepath = tmp_path / "sui.keystore"
    keystore_filepath.write_text(jsonlib.dumps([deployer_keypair.export()]))
    client_config = {
        "active_address": deployer_keypair.address,
        "envs": [{"alias": "localnet", "rpc": "http://localhost:9123"}],
    }

    signer = get_signer("localnet", keystore_filepath, client_config=client_config)
    assert signer.address == deployer_keypair.address
    assert signer.client.url == "http://localhost:9123"

    with pytest.raises(KeyNotFound):
        get_signer(
            "localnet",
            keystore_filepath,
            address=cosigner_keypair.address,
            client_config=client_config,
        )


def test_active_address_from_cli(monkeypatch, deployer_keypair):
    def run(command, **kwargs):
        assert command == ["sui", "client", "active-address"]
        return subprocess.CompletedProcess(command, 0, stdout=deployer_keypair.address + "\n")

    monkeypatch.setattr(subprocess, "run", run)
    assert get_active_address(client_config={}) == deployer_keypair.address


@pytest.mark.parametrize(
    "error",
    [
        FileNotFoundError("sui"),
        subprocess.CalledProcessError(1, "sui", stderr="Cannot open wallet config"),
    ],
)
def test_active_address_unavailable(monkeypatch, error):
    def run(command, **kwargs):
        raise error

    monkeypatch.setattr(subprocess, "run", run)
    with pytest.raises(KeyNotFound):
        get_active_address(client_config={})
