"""Changeflow – core infrastructure (config, database, logging, ids, errors)."""
