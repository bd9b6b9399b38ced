"""Command-line options for the console: storage, websocket and mirror settings."""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .protocol import U32_MAX, BridgeConfig
from .stream_codec import StreamFormat

DEFAULT_SNAP_INTERVAL_S = 60
DEFAULT_SNAP_MAXWAL = 5_000
DEFAULT_WS_PORT = 8787
DEFAULT_MIRROR_INTERVAL_MS = 2_000
MIN_MIRROR_INTERVAL_MS = 200
PIPE_TICK_MS = 200

_UINT_RE = re.compile(r"\+?[0-9]+")


class CliError(ValueError):
    """Raised when the command line cannot be understood."""


def _parse_uint(text: str, bits: int) -> Optional[int]:
    if not _UINT_RE.fullmatch(text):
        return None
    value = int(text)
    return value if value < (1 << bits) else None


@dataclass(frozen=True)
class StoreRuntimeConfig:
    path: Path
    snap_interval_s: int
    max_wal_events: int


@dataclass(frozen=True)
class WsRuntimeConfig:
    port: int
    format: StreamFormat
    nexus_client: Optional[str]


@dataclass
class CliOptions:
    pipe_cbor: bool = False
    store_path: Optional[Path] = None
    snap_interval_s: int = DEFAULT_SNAP_INTERVAL_S
    snap_maxwal: int = DEFAULT_SNAP_MAXWAL
    ws_port: int = DEFAULT_WS_PORT
    ws_format: StreamFormat = StreamFormat.JSON
    nexus_client: Optional[str] = None
    mirror_interval_ms: int = DEFAULT_MIRROR_INTERVAL_MS

    def store_config(self) -> Optional[StoreRuntimeConfig]:
        """Storage settings, or None when no store path was given."""
        if self.store_path is None:
            return None
        return StoreRuntimeConfig(
            path=self.store_path,
            snap_interval_s=self.snap_interval_s,
            max_wal_events=self.snap_maxwal,
        )

    def ws_runtime(self) -> WsRuntimeConfig:
        return WsRuntimeConfig(
            port=self.ws_port, format=self.ws_format, nexus_client=self.nexus_client
        )

    def bridge_config(self) -> BridgeConfig:
        """The bridge configuration used in CBOR pipe mode."""
        store = self.store_config()
        if store is None:
            return BridgeConfig(tick_ms=PIPE_TICK_MS)
        return BridgeConfig(
            tick_ms=PIPE_TICK_MS,
            store_path=str(store.path),
            snap_interval=min(store.snap_interval_s, U32_MAX),
            snap_maxwal=min(store.max_wal_events, U32_MAX),
        )


def parse_cli_args(argv: Optional[Iterable[str]] = None) -> CliOptions:
    """Parse console arguments (without the program name) into options."""
    args = iter(sys.argv[1:] if argv is None else list(argv))
    options = CliOptions()

    def value_for(missing: str) -> str:
        value = next(args, None)
        if value is None:
            raise CliError(missing)
        return value

    for arg in args:
        if arg == "--pipe-cbor":
            options.pipe_cbor = True
        elif arg == "--store":
            options.store_path = Path(value_for("--store requires a path"))
        elif arg == "--snap-interval":
            value = value_for("--snap-interval requires seconds")
            seconds = _parse_uint(value, 64)
            if seconds is None:
                raise CliError(f"--snap-interval expects positive seconds, got {value}")
            if seconds == 0:
                raise CliError("--snap-interval must be greater than zero")
            options.snap_interval_s = seconds
        elif arg == "--snap-maxwal":
            value = value_for("--snap-maxwal requires a number")
            count = _parse_uint(value, 64)
            if count is None:
                raise CliError(f"--snap-maxwal expects a number, got {value}")
            if count == 0:
                raise CliError("--snap-maxwal must be greater than zero")
            options.snap_maxwal = count
        elif arg == "--ws-port":
            value = value_for("--ws-port requires a port")
            port = _parse_uint(value, 16)
            if port is None:
                raise CliError(f"--ws-port expects a valid port, got {value}")
            options.ws_port = port
        elif arg == "--ws-format":
            value = value_for("--ws-format requires a value").lower()
            try:
                options.ws_format = StreamFormat(value)
            except ValueError:
                raise CliError(f"unsupported ws format: {value}") from None
        elif arg == "--nexus-client":
            options.nexus_client = value_for("--nexus-client requires a url")
        elif arg == "--mirror-interval":
            value = value_for("--mirror-interval requires milliseconds")
            interval = _parse_uint(value, 64)
            if interval is None:
                raise CliError(f"--mirror-interval expects a positive number, got {value}")
            if interval < MIN_MIRROR_INTERVAL_MS:
                raise CliError("--mirror-interval must be at least 200")
            options.mirror_interval_ms = interval
        else:
            raise CliError(f"unknown argument: {arg}")
    return options