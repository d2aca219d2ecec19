"""Chat model access and model catalogue."""
