"""mini-kvstore: a minimal RESP key-value server with snapshot persistence."""
