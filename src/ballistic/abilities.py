"""
Access token capabilities.

Tokens carry a flat list of ability strings. Ballistic recognises three:
``api:*`` (REST API), ``mcp:*`` (MCP endpoint) and the legacy wildcard ``*``.
Wildcard tokens predate the API/MCP split: they keep REST access, and reach MCP
only until a configured cutoff. All checks are pure functions of the token's
abilities and, for the cutoff, an explicit current time.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Union

logger = logging.getLogger(__name__)

LEGACY_TOKEN_HEADER = "X-Ballistic-MCP-Legacy-Token"


class TokenAbility(str, Enum):
    API = "api:*"
    MCP = "mcp:*"
    WILDCARD = "*"


class McpAccess(str, Enum):
    GRANTED = "granted"
    LEGACY = "legacy"
    DENIED = "denied"


def parse_abilities(abilities: Optional[Iterable[str]]) -> FrozenSet[TokenAbility]:
    """Known abilities in the list; unknown strings are ignored."""
    known = set()
    for value in abilities or ():
        try:
            known.add(TokenAbility(value))
        except ValueError:
            logger.debug(f"Ignoring unknown token ability {value!r}")
    return frozenset(known)


def has_explicit_ability(abilities: Optional[Iterable[str]], ability: TokenAbility) -> bool:
    return ability in parse_abilities(abilities)


def is_wildcard_token(abilities: Optional[Iterable[str]]) -> bool:
    return has_explicit_ability(abilities, TokenAbility.WILDCARD)


def parse_cutoff(cutoff: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse the configured cutoff; blank or malformed values yield None."""
    if cutoff is None:
        return None
    if isinstance(cutoff, datetime):
        parsed = cutoff
    else:
        text = cutoff.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Ignoring malformed MCP legacy wildcard cutoff {cutoff!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_legacy_wildcard_allowed(now: datetime, cutoff: Union[str, datetime, None]) -> bool:
    """
    True while ``now`` is strictly before the cutoff.

    A missing, empty or unparsable cutoff disables the grace period.
    """
    parsed = parse_cutoff(cutoff)
    if parsed is None:
        return False
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now < parsed


def check_api_access(abilities: Optional[Iterable[str]]) -> bool:
    """REST access: explicit api:* or the legacy wildcard."""
    granted = parse_abilities(abilities)
    return TokenAbility.API in granted or TokenAbility.WILDCARD in granted


def check_mcp_access(abilities: Optional[Iterable[str]], now: datetime,
                     cutoff: Union[str, datetime, None]) -> McpAccess:
    """MCP access: explicit mcp:*, or the wildcard before the cutoff (flagged legacy)."""
    granted = parse_abilities(abilities)
    if TokenAbility.MCP in granted:
        return McpAccess.GRANTED
    if TokenAbility.WILDCARD in granted and is_legacy_wildcard_allowed(now, cutoff):
        return McpAccess.LEGACY
    return McpAccess.DENIED


def is_listed_as_mcp_token(abilities: Optional[Iterable[str]], now: datetime,
                           cutoff: Union[str, datetime, None]) -> bool:
    """Whether a token appears in (and may be revoked from) the MCP token list."""
    return check_mcp_access(abilities, now, cutoff) is not McpAccess.DENIED
