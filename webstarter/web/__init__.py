"""Web layer: page, fragment and health routes."""
