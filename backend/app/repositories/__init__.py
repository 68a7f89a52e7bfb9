"""Persistence access objects, one per aggregate."""

from app.repositories.example_repository import ExampleRepository, Sort, Visibility

__all__ = ["ExampleRepository", "Sort", "Visibility"]
