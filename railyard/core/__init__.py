"""Cross-cutting building blocks: logging, errors, caching."""
