"""Anatomia realtime and shared backend helpers."""
