"""Middleware for the control API."""
