"""
Client-side model of policy-gated package upgrades.

A package's UpgradeCap is wrapped in a policy object at publish time. Upgrading
is a three step handshake inside one transaction: the policy authorizes an
upgrade (issuing a single-use ticket bound to a code digest), the package is
replaced (consuming the ticket and producing a receipt), and the receipt is
committed back to the policy, which records the new package identity.
"""

import itertools
import typing
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from policy_deployment.constants import MS_IN_DAY, MS_IN_HOUR, UpgradePolicy, Weekday
from policy_deployment.exceptions import (
    InvalidCapability,
    PolicyRejected,
    TicketMismatch,
    TicketOutstanding,
)
from policy_deployment.utils import normalize_object_id

_ticket_ids = itertools.count(1)


class ExecutionContext(NamedTuple):
    """What a policy predicate may inspect: the chain clock and the transaction signers."""

    timestamp_ms: int
    signers: Tuple[str, ...] = ()

    @classmethod
    def at(cls, when: datetime, signers: typing.Iterable[str] = ()) -> "ExecutionContext":
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return cls(timestamp_ms=int(when.timestamp() * 1000), signers=tuple(signers))

    @property
    def weekday(self) -> Weekday:
        # the unix epoch was a Thursday; shift by 3 so that 0 is Monday
        days_since_epoch = self.timestamp_ms // MS_IN_DAY
        return Weekday((days_since_epoch + 3) % 7)

    @property
    def hour(self) -> int:
        return (self.timestamp_ms % MS_IN_DAY) // MS_IN_HOUR


#
# Policies
#


class Policy(ABC):
    """A predicate deciding whether an upgrade may be authorized in a given context."""

    MODULE: str = NotImplemented

    @abstractmethod
    def validate(self, context: ExecutionContext) -> bool:
        raise NotImplementedError

    @abstractmethod
    def arguments(self) -> List[Tuple[Any, str]]:
        """Returns the (value, move type) pairs passed to the module's new_policy function."""
        raise NotImplementedError

    @classmethod
    @abstractmethod
    def from_arguments(cls, values: List[Any]) -> "Policy":
        raise NotImplementedError

    @classmethod
    @abstractmethod
    def from_config(cls, config: Dict[str, Any]) -> "Policy":
        raise NotImplementedError

    def __eq__(self, other):
        return type(self) is type(other) and self.arguments() == other.arguments()

    def __repr__(self):
        values = ", ".join(repr(value) for value, _ in self.arguments())
        return f"{type(self).__name__}({values})"


class DayOfWeekPolicy(Policy):
    """Only permits upgrades on one day of the week."""

    MODULE = "day_of_week"

    def __init__(self, day: int):
        try:
            self.day = Weekday(day)
        except ValueError:
            raise ValueError(f"{day} is not a weekday; expected a value from 0 (Monday) to 6")

    def validate(self, context: ExecutionContext) -> bool:
        return context.weekday == self.day

    def arguments(self) -> List[Tuple[Any, str]]:
        return [(int(self.day), "u8")]

    @classmethod
    def from_arguments(cls, values: List[Any]) -> "DayOfWeekPolicy":
        (day,) = values
        return cls(day)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DayOfWeekPolicy":
        day = config.get("day")
        if day is None:
            raise ValueError("'day' is not set for the day_of_week policy.")
        if isinstance(day, str):
            try:
                return cls(Weekday[day.upper()])
            except KeyError:
                raise ValueError(f"'{day}' is not a weekday name")
        return cls(day)


class TimeWindowPolicy(Policy):
    """
    Only permits upgrades between two UTC hours. The window is half-open and
    may wrap past midnight, e.g. 22 -> 2 allows 22:00 to 01:59.
    """

    MODULE = "time_window"

    def __init__(self, start_hour: int, end_hour: int):
        for hour in (start_hour, end_hour):
            if not 0 <= hour <= 23:
                raise ValueError(f"{hour} is not an hour of the day")
        if start_hour == end_hour:
            raise ValueError("Time window must not be empty")
        self.start_hour = start_hour
        self.end_hour = end_hour

    def validate(self, context: ExecutionContext) -> bool:
        hour = context.hour
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour

    def arguments(self) -> List[Tuple[Any, str]]:
        return [(self.start_hour, "u8"), (self.end_hour, "u8")]

    @classmethod
    def from_arguments(cls, values: List[Any]) -> "TimeWindowPolicy":
        start_hour, end_hour = values
        return cls(start_hour, end_hour)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "TimeWindowPolicy":
        try:
            return cls(int(config["start_hour"]), int(config["end_hour"]))
        except KeyError as e:
            raise ValueError(f"{e} is not set for the time_window policy.")


class MultiSignerPolicy(Policy):
    """Only permits upgrades co-signed by at least `threshold` of the listed signers."""

    MODULE = "multi_signer"

    def __init__(self, signers: typing.Iterable[str], threshold: int):
        self.signers = sorted({normalize_object_id(signer) for signer in signers})
        if not 1 <= threshold <= len(self.signers):
            raise ValueError(
                f"Threshold {threshold} is out of range for {len(self.signers)} signer(s)"
            )
        self.threshold = threshold

    def validate(self, context: ExecutionContext) -> bool:
        present = {normalize_object_id(signer) for signer in context.signers}
        return len(present.intersection(self.signers)) >= self.threshold

    def arguments(self) -> List[Tuple[Any, str]]:
        return [(self.signers, "vector<address>"), (self.threshold, "u64")]

    @classmethod
    def from_arguments(cls, values: List[Any]) -> "MultiSignerPolicy":
        signers, threshold = values
        return cls(signers, threshold)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "MultiSignerPolicy":
        try:
            return cls(config["signers"], int(config["threshold"]))
        except KeyError as e:
            raise ValueError(f"{e} is not set for the multi_signer policy.")


POLICIES: Dict[str, typing.Type[Policy]] = {
    policy.MODULE: policy for policy in (DayOfWeekPolicy, TimeWindowPolicy, MultiSignerPolicy)
}


def get_policy_class(module: str) -> typing.Type[Policy]:
    try:
        return POLICIES[module]
    except KeyError:
        raise ValueError(
            f"Unknown policy module '{module}'; expected one of {', '.join(sorted(POLICIES))}"
        )


def policy_from_config(config: Dict[str, Any]) -> Policy:
    """Builds a policy from the 'policy' section of a params file."""
    module = config.get("module")
    if not module:
        raise ValueError("policy module is not set in params file.")
    return get_policy_class(module).from_config(config)


#
# Capability, ticket and receipt
#


class CapabilityReference:
    """The exclusive right to upgrade one deployed package."""

    def __init__(
        self,
        id: str,
        package_id: str,
        version: int = 1,
        policy: UpgradePolicy = UpgradePolicy.COMPATIBLE,
    ):
        self.id = normalize_object_id(id)
        self.package_id = normalize_object_id(package_id)
        self.version = version
        self.policy = UpgradePolicy(policy)
        self.wrapped = False
        self.consumed = False

    def make_immutable(self) -> None:
        """Gives up the right to upgrade; the capability can never be used again."""
        self.consumed = True

    def __repr__(self):
        return (
            f"CapabilityReference(id={self.id}, package_id={self.package_id}, "
            f"version={self.version})"
        )


class UpgradeTicket:
    """Single-use permission to replace a package with code of one specific digest."""

    def __init__(self, policy_id: str, package_id: str, policy: UpgradePolicy, digest: bytes):
        self.id = next(_ticket_ids)
        self.policy_id = policy_id
        self.package_id = package_id
        self.policy = policy
        self.digest = bytes(digest)
        self.consumed = False

    def consume(self) -> None:
        if self.consumed:
            raise TicketMismatch(f"Upgrade ticket {self.id} was already used.")
        self.consumed = True

    def __repr__(self):
        return (
            f"UpgradeTicket(id={self.id}, package_id={self.package_id}, "
            f"digest={self.digest.hex()}, consumed={self.consumed})"
        )


class UpgradeReceipt(NamedTuple):
    """Proof that the package was replaced under a given ticket."""

    ticket_id: int
    policy_id: str
    package_id: str  # the id of the new package
    digest: bytes

    @classmethod
    def for_ticket(cls, ticket: UpgradeTicket, new_package_id: str) -> "UpgradeReceipt":
        return cls(
            ticket_id=ticket.id,
            policy_id=ticket.policy_id,
            package_id=normalize_object_id(new_package_id),
            digest=ticket.digest,
        )


#
# Policy object
#


class PolicyState(Enum):
    IDLE = "idle"
    AUTHORIZED_PENDING = "authorized_pending"


class PolicyObject:
    """An UpgradeCap wrapped with a policy predicate gating its use."""

    def __init__(self, id: str, cap: CapabilityReference, policy: Policy):
        self.id = normalize_object_id(id)
        self.cap = cap
        self.policy = policy
        self.state = PolicyState.IDLE
        self.pending: Optional[UpgradeTicket] = None

    @classmethod
    def wrap_capability(
        cls, cap: CapabilityReference, policy: Policy, id: Optional[str] = None
    ) -> "PolicyObject":
        if cap.wrapped or cap.consumed:
            raise InvalidCapability(f"Capability {cap.id} is not fresh and cannot be wrapped.")
        cap.wrapped = True
        return cls(id=id or cap.id, cap=cap, policy=policy)

    @property
    def package_id(self) -> str:
        return self.cap.package_id

    @property
    def version(self) -> int:
        return self.cap.version

    def authorize_upgrade(
        self, policy: UpgradePolicy, digest: bytes, context: ExecutionContext
    ) -> UpgradeTicket:
        if self.cap.consumed:
            raise InvalidCapability(f"Capability {self.cap.id} has been consumed.")
        if self.state is PolicyState.AUTHORIZED_PENDING:
            raise TicketOutstanding(
                f"Policy {self.id} already has an outstanding upgrade ticket {self.pending.id}."
            )
        policy = UpgradePolicy(policy)
        if policy < self.cap.policy:
            raise PolicyRejected(
                f"Requested upgrade policy {policy.name} is more permissive "
                f"than the capability's {self.cap.policy.name}."
            )
        if not self.policy.validate(context):
            raise PolicyRejected(f"{self.policy!r} does not permit an upgrade at this time.")

        ticket = UpgradeTicket(
            policy_id=self.id, package_id=self.cap.package_id, policy=policy, digest=digest
        )
        self.pending = ticket
        self.state = PolicyState.AUTHORIZED_PENDING
        return ticket

    def commit_upgrade(self, receipt: UpgradeReceipt) -> None:
        if self.pending is None:
            raise TicketMismatch(f"Policy {self.id} has no pending upgrade to commit.")
        if receipt.policy_id != self.id or receipt.ticket_id != self.pending.id:
            raise TicketMismatch(
                f"Receipt for ticket {receipt.ticket_id} does not match "
                f"pending ticket {self.pending.id} of policy {self.id}."
            )

        self.cap.package_id = receipt.package_id
        self.cap.version += 1
        self._reset()

    def discard_ticket(self) -> None:
        """Abandons the pending upgrade; the ticket can no longer be used."""
        if self.pending is not None:
            self.pending.consumed = True
        self._reset()

    def _reset(self) -> None:
        self.pending = None
        self.state = PolicyState.IDLE

    def __repr__(self):
        return (
            f"PolicyObject(id={self.id}, package_id={self.package_id}, "
            f"policy={self.policy!r}, state={self.state.value})"
        )
