"""Test package initialization."""
