from enum import IntEnum
from pathlib import Path

import policy_deployment

#
# Filesystem
#

DEPLOYMENT_DIR = Path(policy_deployment.__file__).parent
ARTIFACTS_DIR = DEPLOYMENT_DIR / "artifacts"

SUI_CONFIG_DIR = Path.home() / ".sui" / "sui_config"
SUI_KEYSTORE_FILEPATH = SUI_CONFIG_DIR / "sui.keystore"
SUI_CLIENT_CONFIG_FILEPATH = SUI_CONFIG_DIR / "client.yaml"

#
# Sui CLI
#

SUI = "sui"

#
# Networks
#

LOCALNET = "localnet"
DEVNET = "devnet"
TESTNET = "testnet"
MAINNET = "mainnet"

SUPPORTED_NETWORKS = [LOCALNET, DEVNET, TESTNET, MAINNET]

RPC_ENDPOINTS = {
    LOCALNET: "http://127.0.0.1:9000",
    DEVNET: "https://fullnode.devnet.sui.io:443",
    TESTNET: "https://fullnode.testnet.sui.io:443",
    MAINNET: "https://fullnode.mainnet.sui.io:443",
}

RPC_TIMEOUT = 60  # seconds

#
# Keys and addresses
#

ED25519_FLAG = 0x00
SUI_ADDRESS_LENGTH = 32
PRIVATE_KEY_LENGTH = 32

# Intent prefix for transaction data: (scope=TransactionData, version=V0, app=Sui)
TRANSACTION_INTENT = bytes([0, 0, 0])

#
# Transactions
#

SUI_COIN_TYPE = "0x2::sui::SUI"
DEFAULT_GAS_BUDGET = 200_000_000  # MIST
MAX_GAS_PAYMENT_OBJECTS = 256

EXECUTION_OPTIONS = {
    "showEffects": True,
    "showObjectChanges": True,
}

#
# Upgrade policies
#

NEW_POLICY_FUNCTION = "new_policy"
AUTHORIZE_UPGRADE_FUNCTION = "authorize_upgrade"
COMMIT_UPGRADE_FUNCTION = "commit_upgrade"

# Name of the struct wrapping the UpgradeCap in every policy module
POLICY_STRUCT_NAME = "UpgradeCap"

MS_IN_DAY = 24 * 60 * 60 * 1000
MS_IN_HOUR = 60 * 60 * 1000


class UpgradePolicy(IntEnum):
    """Upgrade compatibility levels as defined in sui::package; higher is stricter."""

    COMPATIBLE = 0
    ADDITIVE = 128
    DEP_ONLY = 192


class Weekday(IntEnum):
    """Weekdays as understood by the day_of_week policy module (0 = Monday)."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6
