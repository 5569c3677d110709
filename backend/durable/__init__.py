"""Durable workflow host: orchestrations, entities and callback correlation."""
