"""HTTP API for participants and the admin console."""
