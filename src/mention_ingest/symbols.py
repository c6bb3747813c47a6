"""Symbol resolution against a per-run token snapshot.

A TokenSnapshot is loaded once at the start of an ingestion run and is never
mutated afterwards, even if the tokens table changes mid-run: attribution is
consistent "as of load time". Symbols are not unique, so one symbol can map to
several token ids; every match is returned rather than guessing a winner.
"""

import hashlib
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Tuple

import structlog

from mention_ingest.models.video_models import TokenIdentity

logger = structlog.get_logger(__name__)


class TokenSnapshot:
    """Immutable symbol -> token ids multimap.

    Token ids under one symbol keep the order in which the rows were loaded
    (the token table is read ordered by id ascending).
    """

    def __init__(self, tokens: Iterable[TokenIdentity]):
        grouped = {}
        count = 0
        for token in tokens:
            grouped.setdefault(token.symbol, []).append(token.id)
            count += 1

        self._by_symbol: Mapping[str, Tuple[int, ...]] = MappingProxyType(
            {symbol: tuple(ids) for symbol, ids in grouped.items()}
        )
        self._token_count = count

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "TokenSnapshot":
        """Build a snapshot from {"id", "symbol"} rows, skipping rows without a symbol."""
        tokens = []
        for row in rows:
            symbol = row.get("symbol")
            if not symbol:
                continue
            tokens.append(TokenIdentity(id=int(row["id"]), symbol=str(symbol)))
        return cls(tokens)

    @property
    def by_symbol(self) -> Mapping[str, Tuple[int, ...]]:
        """Read-only view of the symbol -> token ids mapping."""
        return self._by_symbol

    @property
    def token_count(self) -> int:
        return self._token_count

    def __len__(self) -> int:
        return len(self._by_symbol)

    def fingerprint(self) -> str:
        """Deterministic digest of the snapshot contents.

        Two snapshots with the same fingerprint resolve every key identically,
        which is what resuming a partially written run depends on.
        """
        digest = hashlib.sha256()
        for symbol in sorted(self._by_symbol):
            ids = ",".join(str(token_id) for token_id in self._by_symbol[symbol])
            digest.update(f"{symbol}\x1f{ids}\x1e".encode("utf-8"))
        return digest.hexdigest()


class SymbolResolver:
    """Maps canonical mention keys to the token ids sharing that symbol."""

    def __init__(self, snapshot: TokenSnapshot):
        self._snapshot = snapshot

    @property
    def snapshot(self) -> TokenSnapshot:
        return self._snapshot

    def resolve(self, key: str) -> Tuple[int, ...]:
        """Return every token id whose symbol equals key, in load order.

        An unknown symbol is the common case (most comment chatter names no
        known token) and yields an empty tuple, never an error.

        Example:
            >>> snapshot = TokenSnapshot([TokenIdentity(1, "BONK"), TokenIdentity(7, "BONK")])
            >>> SymbolResolver(snapshot).resolve("BONK")
            (1, 7)
            >>> SymbolResolver(snapshot).resolve("NOPE")
            ()
        """
        return self._snapshot.by_symbol.get(key, ())


def load_token_snapshot(datastore) -> TokenSnapshot:
    """Read all {id, symbol} token rows once and freeze them into a snapshot.

    Args:
        datastore: Any datastore exposing select_tokens() -> list of row mappings,
            ordered by id ascending

    Returns:
        TokenSnapshot for the current run

    Raises:
        DatastoreError: If the token table cannot be read
    """
    rows = datastore.select_tokens()
    snapshot = TokenSnapshot.from_rows(rows)
    logger.info(
        "token_snapshot_loaded",
        token_count=snapshot.token_count,
        symbol_count=len(snapshot),
    )
    return snapshot
