"""Orders Service business logic package."""
