"""Integration tests against a fake ticketing backend."""
