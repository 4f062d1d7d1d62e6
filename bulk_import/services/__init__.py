"""Pipeline services: analysis, mapping, validation, recovery and execution."""
