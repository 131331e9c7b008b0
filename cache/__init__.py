"""Queue backend connection management."""
