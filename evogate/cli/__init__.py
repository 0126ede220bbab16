"""CLI module for evogate."""
