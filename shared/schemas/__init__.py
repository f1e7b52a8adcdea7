"""Pydantic schemas shared by the API and the worker."""
