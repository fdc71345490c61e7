"""Persistence of user profiles (last used address)."""
