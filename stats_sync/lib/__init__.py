"""Shared library modules for the stats sync Lambdas."""
