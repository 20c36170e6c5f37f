"""Block device, filesystem and archive operations for baking images."""
