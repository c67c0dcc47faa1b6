"""Admission router service."""
