"""REST API for the workflow simulator."""
