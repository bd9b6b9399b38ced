"""Wire protocol, stream codec, event hub, WebSocket server and client, and console helpers."""

__version__ = "0.1.0"

__all__ = [
    "cli_commands",
    "cli_format",
    "cli_options",
    "hub",
    "protocol",
    "stream_codec",
    "ws_client",
    "ws_server",
]