"""Core domain logic for meshloom."""
