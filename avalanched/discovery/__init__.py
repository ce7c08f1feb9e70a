"""Leaderless discovery: nodes rendezvous through signed records in the object store."""
