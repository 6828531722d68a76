"""Continuation tokens for stateless batch pagination.

A token carries everything needed to resume a result chain on any worker:
the query, its normalized filters, the ids already delivered, the batch
number and when it was issued. Tokens are HS256-signed JWTs so clients can
neither forge delivered-id sets nor alter the filters.

Expiry is checked against the codec clock rather than the JWT ``exp``
claim, so a fake clock can drive it in tests.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional

import jwt
import structlog

from ..common.config import RankingConfig
from ..common.errors import TokenExpiredError, TokenMalformedError
from ..common.metrics import RankingMetrics

logger = structlog.get_logger("pagination.token_codec")

TOKEN_VERSION = 1
MAX_TOKEN_LENGTH = 64 * 1024


@dataclass(frozen=True)
class ContinuationToken:
    """Decoded continuation cursor. A new token is always a new value.

    ``batch_number`` is the number of the batch this token resumes at.
    """
    query_text: str
    normalized_filters: Dict[str, Any] = field(default_factory=dict, hash=False)
    delivered_ids: FrozenSet[str] = frozenset()
    batch_number: int = 2
    issued_at: float = 0.0
    ttl: float = 1800.0

    def advance(self, returned_ids: Iterable[str], issued_at: float) -> "ContinuationToken":
        """Token for the batch after this one."""
        return replace(
            self,
            delivered_ids=self.delivered_ids.union(returned_ids),
            batch_number=self.batch_number + 1,
            issued_at=issued_at,
        )


class PaginationTokenCodec:
    """Encodes and validates continuation tokens.

    Parameters
    - secret: HMAC key used to sign tokens
    - ttl_seconds: Lifetime stamped on newly issued tokens
    - algorithm: JWT signing algorithm
    - clock: Wall-clock time source in seconds
    - metrics: Optional ``RankingMetrics`` for rejection counts
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: float = 1800.0,
        algorithm: str = "HS256",
        clock: Callable[[], float] = time.time,
        metrics: Optional[RankingMetrics] = None,
    ):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self.secret = secret
        self.ttl_seconds = ttl_seconds
        self.algorithm = algorithm
        self._clock = clock
        self.metrics = metrics

    @classmethod
    def from_config(
        cls,
        config: RankingConfig,
        clock: Callable[[], float] = time.time,
        metrics: Optional[RankingMetrics] = None,
    ) -> "PaginationTokenCodec":
        return cls(
            secret=config.token_secret,
            ttl_seconds=config.token_ttl_seconds,
            algorithm=config.token_algorithm,
            clock=clock,
            metrics=metrics,
        )

    def now(self) -> float:
        return self._clock()

    def issue(
        self,
        query_text: str,
        normalized_filters: Mapping[str, Any],
        delivered_ids: Iterable[str],
        batch_number: int,
    ) -> ContinuationToken:
        return ContinuationToken(
            query_text=query_text,
            normalized_filters=dict(normalized_filters),
            delivered_ids=frozenset(delivered_ids),
            batch_number=batch_number,
            issued_at=self.now(),
            ttl=self.ttl_seconds,
        )

    def encode(self, token: ContinuationToken) -> str:
        payload = {
            "v": TOKEN_VERSION,
            "q": token.query_text,
            "f": token.normalized_filters,
            "d": sorted(token.delivered_ids),
            "b": token.batch_number,
            "ts": token.issued_at,
            "ttl": token.ttl,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, raw: Any) -> ContinuationToken:
        """Validate an untrusted token string.

        Raises ``TokenMalformedError`` for anything that is not an untampered
        token of the current format, and ``TokenExpiredError`` once
        ``now - issued_at > ttl``.
        """
        if not isinstance(raw, str) or not raw or len(raw) > MAX_TOKEN_LENGTH:
            self._reject("malformed", "Token is not a non-empty string")
            raise TokenMalformedError("Continuation token must be a non-empty string")

        try:
            payload = jwt.decode(
                raw,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["v", "q", "d", "b", "ts", "ttl"]},
            )
        except jwt.PyJWTError as e:
            self._reject("malformed", str(e))
            raise TokenMalformedError(f"Invalid continuation token: {e}") from e

        token = self._from_payload(payload)

        age = self.now() - token.issued_at
        if age > token.ttl:
            self._reject("expired", "Token outlived its ttl", age_seconds=age, ttl=token.ttl)
            raise TokenExpiredError(
                f"Continuation token expired {age - token.ttl:.1f}s ago; start a new search"
            )
        return token

    def _from_payload(self, payload: Dict[str, Any]) -> ContinuationToken:
        version = payload.get("v")
        query = payload.get("q")
        filters = payload.get("f", {})
        delivered = payload.get("d")
        batch_number = payload.get("b")
        issued_at = payload.get("ts")
        ttl = payload.get("ttl")

        problems = []
        if version != TOKEN_VERSION:
            problems.append(f"unsupported version {version!r}")
        if not isinstance(query, str) or not query:
            problems.append("query missing")
        if not isinstance(filters, dict):
            problems.append("filters not an object")
        if not isinstance(delivered, list) or not all(isinstance(i, str) for i in delivered):
            problems.append("delivered ids not a list of strings")
        if not _is_int(batch_number) or batch_number < 1:
            problems.append("batch number invalid")
        if not _is_number(issued_at):
            problems.append("issued_at invalid")
        if not _is_number(ttl) or ttl <= 0:
            problems.append("ttl invalid")

        if problems:
            self._reject("malformed", "; ".join(problems))
            raise TokenMalformedError(f"Invalid continuation token: {'; '.join(problems)}")

        return ContinuationToken(
            query_text=query,
            normalized_filters=filters,
            delivered_ids=frozenset(delivered),
            batch_number=batch_number,
            issued_at=float(issued_at),
            ttl=float(ttl),
        )

    def _reject(self, reason: str, detail: str, **kwargs) -> None:
        logger.warning("Continuation token rejected", reason=reason, detail=detail, **kwargs)
        if self.metrics is not None:
            self.metrics.record_token_rejection(reason)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
