"""observatory.devices — device records, the registry and the connection lifecycle."""
