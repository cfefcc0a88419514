"""Harness configuration."""
