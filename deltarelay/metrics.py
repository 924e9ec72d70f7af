"""Labelled counters and gauges for the websocket handler, in text exposition form."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value):
        return str(int(value))
    return repr(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class _LabeledMetric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str, label_names: Sequence[str] = ()) -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = {}

    def _key(self, args: tuple[str, ...]) -> tuple[str, ...]:
        if len(args) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(args)}"
            )
        return tuple(str(arg) for arg in args)

    def _get(self, args: tuple[str, ...]) -> float:
        return self._values.get(self._key(args), 0.0)

    def _add_one(self, args: tuple[str, ...]) -> None:
        key = self._key(args)
        self._values[key] = self._values.get(key, 0.0) + 1

    def render_lines(self) -> list[str]:
        if not self._values:
            return []
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} {self.kind}"]
        for key in sorted(self._values):
            if key:
                labels = ",".join(
                    f'{name}="{_escape_label(val)}"' for name, val in zip(self.label_names, key)
                )
                lines.append(f"{self.name}{{{labels}}} {_format_value(self._values[key])}")
            else:
                lines.append(f"{self.name} {_format_value(self._values[key])}")
        return lines


class LabeledCounter(_LabeledMetric):
    """A monotonically increasing counter keyed by label values."""

    kind = "counter"

    def inc(self, *args: str) -> None:
        """Add one to the counter for the given label values."""
        self._add_one(args)

    def value(self, *args: str) -> float:
        """Current count for the given label values; 0 when never touched."""
        return self._get(args)


class LabeledGauge(_LabeledMetric):
    """A gauge keyed by label values."""

    kind = "gauge"

    def set(self, value: float, *args: str) -> None:
        """Set the gauge for the given label values."""
        self._values[self._key(args)] = float(value)

    def inc(self, *args: str) -> None:
        """Add one to the gauge for the given label values."""
        self._add_one(args)

    def value(self, *args: str) -> float:
        """Current value for the given label values; 0 when never touched."""
        return self._get(args)


@dataclass
class HandlerMetrics:
    """The metric families the websocket handler maintains."""

    messages_sent_total: LabeledCounter = field(
        default_factory=lambda: LabeledCounter(
            "websocket_messages_sent_total",
            "Total number of messages sent to clients",
            ("channel", "product_id"),
        )
    )
    messages_received_total: LabeledCounter = field(
        default_factory=lambda: LabeledCounter(
            "websocket_messages_received_total",
            "Total number of messages received from clients",
            ("channel",),
        )
    )
    active_connections: LabeledGauge = field(
        default_factory=lambda: LabeledGauge(
            "websocket_active_connections",
            "Number of active client connections",
        )
    )
    active_subscriptions: LabeledGauge = field(
        default_factory=lambda: LabeledGauge(
            "websocket_active_subscriptions",
            "Number of active subscriptions per channel",
            ("channel",),
        )
    )
    errors_total: LabeledCounter = field(
        default_factory=lambda: LabeledCounter(
            "websocket_errors_total",
            "Total number of errors encountered",
            ("error_type",),
        )
    )

    def render(self) -> str:
        """Render every family that has samples in the text exposition format."""
        families = (
            self.messages_sent_total,
            self.messages_received_total,
            self.active_connections,
            self.active_subscriptions,
            self.errors_total,
        )
        lines = [line for family in families for line in family.render_lines()]
        return "\n".join(lines) + "\n" if lines else ""