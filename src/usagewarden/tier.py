from collections.abc import Iterable
from enum import Enum


class AccountTier(str, Enum):
    """
    AccountTier is the capacity class of an account, derived from
    the capability strings reported by the account's organization.
    """

    FREE = "free"
    PRO = "pro"
    MAX = "max"
    TEAM = "team"
    ENTERPRISE = "enterprise"

    @property
    def weight(self) -> "float":
        """
        relative capacity compared to a pro account (1x baseline).
        """
        return _WEIGHTS[self]


_WEIGHTS: "dict[AccountTier, float]" = {
    AccountTier.FREE: 0.2,
    AccountTier.PRO: 1.0,
    AccountTier.MAX: 5.0,
    AccountTier.TEAM: 5.0,
    AccountTier.ENTERPRISE: 10.0,
}

# checked in order, first substring hit wins
_PRIORITY: "list[tuple[tuple[str, ...], AccountTier]]" = [
    (("max",), AccountTier.MAX),
    (("enterprise",), AccountTier.ENTERPRISE),
    (("team",), AccountTier.TEAM),
    (("pro", "raven"), AccountTier.PRO),
]


def resolve(capabilities: "Iterable[str]") -> "AccountTier":
    """
    resolves capability strings to a tier using case-insensitive
    substring matching. Unknown but present capabilities are treated
    as a paid (pro) account, an empty set as free.
    """
    lowered = [c.lower() for c in capabilities]

    for needles, tier in _PRIORITY:
        for cap in lowered:
            if any(n in cap for n in needles):
                return tier

    if lowered:
        return AccountTier.PRO
    return AccountTier.FREE
