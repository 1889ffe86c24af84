"""
Observability module for orgguard.

Structured logging with a per-dispatch request id. Every command the
dispatcher executes is logged with its command name, organization and
terminal state; credentials never appear in log records.
"""
