"""Records proxy: HTTP service holding per-owner record collections."""
