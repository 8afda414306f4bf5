"""Durable notification queue and dispatcher."""
