"""HTTP interface: run control, status stream and freshness."""

from .app import create_app
from .stream import format_sse, run_event_stream

__all__ = ["create_app", "format_sse", "run_event_stream"]
