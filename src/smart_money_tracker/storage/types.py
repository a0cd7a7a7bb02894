"""Exact 256-bit unsigned integer column type.

On-chain amounts overflow BIGINT and lose precision as floats, so they are
stored as decimal strings and converted back to ``int`` on load.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.types import String, TypeDecorator

UINT256_MAX = 2**256 - 1
UINT256_DIGITS = 78


class UInt256(TypeDecorator[int]):
    impl = String(UINT256_DIGITS)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:  # noqa: ARG002
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError("UInt256 value must be an int")
        if value < 0 or value > UINT256_MAX:
            raise ValueError("UInt256 value out of range")
        return str(value)

    def process_result_value(self, value: Any, dialect: Any) -> int | None:  # noqa: ARG002
        if value is None:
            return None
        return int(value)
