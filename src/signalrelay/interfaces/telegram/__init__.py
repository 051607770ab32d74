# --- START OF FILE: src/signalrelay/interfaces/telegram/__init__.py ---
"""
Telegram interface package.

Kept light on purpose: no imports of boot/build_services here, so the
delivery service can import the formatters without an import cycle.
Import submodules directly, e.g.
    from signalrelay.interfaces.telegram.formatters import build_alert_message
"""

__all__ = [
    # nothing exported by default
]
# --- END OF FILE ---
