"""Command line entry points for HealForge."""
