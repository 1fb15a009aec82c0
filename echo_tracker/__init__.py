"""Echo activity tracker: page catalog, project rules and dashboard statistics."""

__version__ = "0.1.0"
