"""Utility modules."""

from .dom import AGENT_BOOTSTRAP_JS, DOMDriver, LoaderProbe, parse_detected_settings

__all__ = ["AGENT_BOOTSTRAP_JS", "DOMDriver", "LoaderProbe", "parse_detected_settings"]
