"""Init file for batch generation services."""
