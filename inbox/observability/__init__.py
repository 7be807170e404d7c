"""Request-scoped context and logging setup."""
