"""Session authentication for the JSON API."""
