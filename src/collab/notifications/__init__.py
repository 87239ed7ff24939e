"""In-app notifications fed by domain events."""
