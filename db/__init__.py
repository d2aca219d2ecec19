"""Storage backends and row models."""
