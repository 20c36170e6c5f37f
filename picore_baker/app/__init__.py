"""Command-line application and bake pipeline."""
