"""State persistence layer: tables, engines and the tenant-scoped gateway."""
