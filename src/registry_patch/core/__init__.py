"""Registry access primitives."""
