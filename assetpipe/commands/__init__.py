"""assetpipe command implementations: clean, dev server, watch."""
