"""
Test suite for pipeline-runner.

This package contains tests for the manifest model, expression rendering,
built-in actions and the job runner, plus CLI-level tests.

Test Categories:
- Unit tests: Test individual functions and classes in isolation
- Runner tests: Run whole manifests against mocked external tools
- Edge case tests: Test boundary conditions and error scenarios
"""
