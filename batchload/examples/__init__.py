"""Example incremental loads for testing and demonstration.

YAML examples live in docs/examples/:
- orders_incremental.yaml: SQL Server orders into a local DuckDB file

Python examples (for advanced features):
- orders_incremental.py: Python-defined config, whole-run retry and
  the @load_job decorator

Use Python examples when you need features not available in YAML.
"""
