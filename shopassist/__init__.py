"""Retrieval-augmented answer core for a shop assistant."""
