from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "TunnelStats",
    "describe_transfer",
    "humanize_bytes",
    "humanize_duration",
]

_SCALED_UNITS = ("KB", "MB", "GB", "TB")


def humanize_bytes(n: int) -> str:
    """Binary units with one decimal; whole bytes below 1 KiB. Junk reads as 0."""
    try:
        value = max(0, int(n))
    except (TypeError, ValueError):
        value = 0
    if value < 1024:
        return f"{value}B"
    scaled = float(value)
    for unit in _SCALED_UNITS:
        scaled /= 1024.0
        if scaled < 1024.0:
            return f"{scaled:.1f}{unit}"
    return f"{scaled:.1f}{_SCALED_UNITS[-1]}"


def humanize_duration(seconds: float) -> str:
    """Milliseconds under a second, otherwise h/m/s without leading zero fields."""
    try:
        s = max(0.0, float(seconds))
    except (TypeError, ValueError):
        s = 0.0
    if s < 1.0:
        return f"{int(s * 1000)}ms"
    hours, rest = divmod(int(round(s)), 3600)
    fields = [(hours, "h"), (rest // 60, "m"), (rest % 60, "s")]
    while len(fields) > 1 and fields[0][0] == 0:
        fields.pop(0)
    return "".join(f"{v}{unit}" for v, unit in fields)


def describe_transfer(to_target: int, to_client: int, elapsed: float | None = None) -> str:
    text = f"up={humanize_bytes(to_target)} down={humanize_bytes(to_client)}"
    if elapsed is not None:
        text += f" dur={humanize_duration(elapsed)}"
    return text


@dataclass
class TunnelStats:
    # Mutated only from the event loop thread
    accepted: int = 0
    tunneled: int = 0
    dial_failures: int = 0
    active: int = 0
    bytes_to_target: int = 0
    bytes_to_client: int = 0

    def session_opened(self) -> None:
        self.tunneled += 1
        self.active += 1

    def session_closed(self, to_target: int, to_client: int) -> None:
        self.active = max(0, self.active - 1)
        self.bytes_to_target += max(0, to_target)
        self.bytes_to_client += max(0, to_client)

    def summary(self) -> str:
        return (
            f"accepted={self.accepted} tunneled={self.tunneled} active={self.active} "
            f"dial_failures={self.dial_failures} "
            f"{describe_transfer(self.bytes_to_target, self.bytes_to_client)}"
        )
