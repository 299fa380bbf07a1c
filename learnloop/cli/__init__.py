"""Command line interface for operating the learnloop pipeline."""
