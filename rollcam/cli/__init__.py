"""Rollcam command-line interface."""
