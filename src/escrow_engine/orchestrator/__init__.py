"""Coordinating services: buyer/seller operations, logistics hooks, admin tooling."""
