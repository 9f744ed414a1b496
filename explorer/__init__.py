"""JSON API for the chainview explorer."""
