"""Serial connection handling for eblocks-companion."""
