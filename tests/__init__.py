"""batchload test suite.

Unit tests live in tests/unit/, one module per library module. Shared
fixtures are in conftest.py; data generators and the failure-injecting
sink proxy are in load_helpers.py.

Full-volume scenarios are marked ``slow``:
    pytest -m "not slow"
"""
