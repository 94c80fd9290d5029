"""
Integration tests for codejudge.

These tests drive real toolchains, a Docker daemon or a running server at
localhost:8000. Run with: pytest tests/integration/ -v -m integration
"""
