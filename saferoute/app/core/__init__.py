"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON / pretty logging
    errors          — exception hierarchy & HTTP handlers
    middleware      — request logging for the relay hub
"""
