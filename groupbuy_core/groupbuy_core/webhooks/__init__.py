"""Inbound messaging-provider webhooks."""
