"""Offline-first synchronisation engine for the KeyVault credential store."""
