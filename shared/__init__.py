"""Configuration, models, errors and the HTTP layer shared by the gateway."""
