"""identity/ -- Account identity and session security core.

Layer rule: identity/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/. Configuration constants arrive as
constructor arguments; api/ wires them from core.config.get_settings().
"""
