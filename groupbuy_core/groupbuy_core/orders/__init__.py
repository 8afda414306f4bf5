"""Order intake, status lifecycle and host actions."""
