"""Pydantic schemas for the admin RBAC API."""
