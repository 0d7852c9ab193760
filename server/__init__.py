"""Relay server: session registry, key exchange and message relaying."""
