"""Reshaping of feed messages before they are sent to websocket clients."""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Iterable
from decimal import Decimal
from typing import Any, Optional

log = logging.getLogger(__name__)

EXPECTED_TWAP_PRICE = 0.0014579
EXPECTED_FUNDING_PRODUCT_ID = 139


class MessageFormatError(ValueError):
    """Raised when a message cannot be decoded or lacks required fields."""


def now_millis() -> int:
    """Current time in milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


def _decode(message: bytes) -> dict[str, Any]:
    try:
        msg = json.loads(message)
    except ValueError as exc:
        raise MessageFormatError(f"invalid JSON message: {exc}") from exc
    if not isinstance(msg, dict):
        raise MessageFormatError("message is not a JSON object")
    return msg


def _encode(msg: dict[str, Any]) -> bytes:
    return json.dumps(msg, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode()


def normalize_spot_price(message: bytes, now_ms: int) -> bytes:
    """Reduce a ``v2/spot_price`` message to ``s``, ``p``, ``type`` and a timestamp.

    Symbol and price are taken from ``symbol``/``price`` or ``s``/``p``.
    A timestamp of ``now_ms`` is added only when the message had none.
    """
    msg = _decode(message)
    symbol_key = "symbol" if "symbol" in msg else "s"
    price_key = "price" if "price" in msg else "p"
    if symbol_key not in msg or price_key not in msg:
        raise MessageFormatError("spot price message lacks symbol or price")
    result: dict[str, Any] = {
        "s": msg[symbol_key],
        "p": msg[price_key],
        "type": msg.get("type"),
    }
    if "timestamp" not in msg:
        result["timestamp"] = now_ms
    return _encode(result)


def prepare_message(channel: str, message: bytes, now_ms: int) -> bytes:
    """Reshape a message for ``spot_30mtwap_price`` and ``funding_rate``.

    Messages of other channels are checked to be JSON objects and returned
    unchanged. In reshaped messages a missing timestamp becomes ``now_ms``.
    """
    msg = _decode(message)
    if "timestamp" not in msg:
        msg["timestamp"] = now_ms

    if channel == "spot_30mtwap_price":
        price_text = msg.get("price")
        if isinstance(price_text, str):
            try:
                price = float(price_text)
            except ValueError:
                price = None
            if price is not None and abs(price - EXPECTED_TWAP_PRICE) > EXPECTED_TWAP_PRICE * 100:
                log.warning(
                    "Unexpected price for .DEXBTUSD: received %s, expected %s",
                    price,
                    EXPECTED_TWAP_PRICE,
                )
        return _encode(
            {
                "symbol": msg.get("symbol"),
                "price": msg.get("price"),
                "type": msg.get("type"),
                "timestamp": msg.get("timestamp"),
            }
        )

    if channel == "funding_rate":
        pid = msg.get("product_id")
        if (
            isinstance(pid, (int, float))
            and not isinstance(pid, bool)
            and pid != EXPECTED_FUNDING_PRODUCT_ID
        ):
            log.warning(
                "Unexpected product_id for BTCUSD: received %s, expected %s",
                pid,
                EXPECTED_FUNDING_PRODUCT_ID,
            )
        return _encode(
            {
                key: msg.get(key)
                for key in (
                    "symbol",
                    "product_id",
                    "type",
                    "funding_rate",
                    "funding_rate_8h",
                    "next_funding_realization",
                    "predicted_funding_rate",
                    "timestamp",
                )
            }
        )

    return message


def matches_filter(product_ids: Optional[Iterable[str]], product_id: str) -> bool:
    """Whether a client filter admits ``product_id``; an empty filter admits all."""
    ids = list(product_ids or ())
    if not ids:
        return True
    return any(pid == "all" or pid == product_id for pid in ids)


def _format_number(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    number = Decimal(repr(value)).normalize()
    sign, digits, exponent = number.as_tuple()
    if digits == (0,):
        return "0"
    sci = len(digits) - 1 + exponent
    if sci < -4 or sci >= 21:
        text = str(digits[0])
        if len(digits) > 1:
            text += "." + "".join(map(str, digits[1:]))
        text += f"e{'-' if sci < 0 else '+'}{abs(sci):02d}"
        return ("-" if sign else "") + text
    return format(number, "f")


def parse_symbols(symbols: Any) -> list[str]:
    """Turn a subscription's ``symbols`` list into product id strings.

    Strings are kept, numbers are written out, anything else is dropped.
    """
    if not isinstance(symbols, list):
        return []
    result = []
    for symbol in symbols:
        if isinstance(symbol, str):
            result.append(symbol)
        elif isinstance(symbol, (int, float)) and not isinstance(symbol, bool):
            result.append(_format_number(float(symbol)))
    return result