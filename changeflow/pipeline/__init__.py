"""Changeflow – pipeline definition, planning and execution."""
