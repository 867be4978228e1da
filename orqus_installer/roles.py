"""
Node roles and the per-role policy table.

ROLE_POLICIES is the only place that maps a role to concrete policy; every
other module asks role_configuration() instead of branching on the role.
"""
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict

from .errors import InvalidConfiguration


class NodeRole(str, Enum):
    VALIDATOR = "validator"
    SENTRY = "sentry"
    RPC = "rpc"
    ARCHIVE = "archive"

    @classmethod
    def parse(cls, value) -> "NodeRole":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(r.value for r in cls)
            raise InvalidConfiguration(
                f"Invalid NODE_TYPE: {value}",
                hint=f"Valid options: {valid}",
            )


class InstallMode(str, Enum):
    BINARY = "binary"
    DOCKER = "docker"

    @classmethod
    def parse(cls, value) -> "InstallMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidConfiguration(
                f"Invalid INSTALL_MODE: {value}",
                hint="Valid options: binary, docker",
            )


@dataclass(frozen=True)
class RoleConfiguration:
    """Policy knobs derived from the node role"""
    peer_exchange_enabled: bool
    address_book_strict: bool
    slashing_enabled: bool
    retain_blocks: int  # 0 keeps every block

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


ROLE_POLICIES: Dict[NodeRole, RoleConfiguration] = {
    # Validators only talk to their sentries. Slashing stays off until the operator opts in.
    NodeRole.VALIDATOR: RoleConfiguration(
        peer_exchange_enabled=False,
        address_book_strict=False,
        slashing_enabled=False,
        retain_blocks=0,
    ),
    NodeRole.SENTRY: RoleConfiguration(
        peer_exchange_enabled=True,
        address_book_strict=False,
        slashing_enabled=False,
        retain_blocks=0,
    ),
    NodeRole.RPC: RoleConfiguration(
        peer_exchange_enabled=True,
        address_book_strict=True,
        slashing_enabled=False,
        retain_blocks=100000,
    ),
    NodeRole.ARCHIVE: RoleConfiguration(
        peer_exchange_enabled=True,
        address_book_strict=True,
        slashing_enabled=False,
        retain_blocks=0,
    ),
}


def role_configuration(role) -> RoleConfiguration:
    """Return the policy for a role (accepts a NodeRole or its string value)."""
    return ROLE_POLICIES[NodeRole.parse(role)]


def signs_blocks(role) -> bool:
    """Only validators are expected to bootstrap a brand-new network."""
    return NodeRole.parse(role) is NodeRole.VALIDATOR
