"""Self-hosted collector for Sentry SDK errors, transactions and logs, with a
web dashboard and an MCP server over a SQLite database."""

__version__ = "0.1.0"