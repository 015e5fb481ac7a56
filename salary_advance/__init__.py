"""Salary advance lending backend."""
