"""Compose image update checking and applying."""
