"""Changeflow – command-line scripts."""
