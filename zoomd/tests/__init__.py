"""
Test suite for the `zoomd` module.

This package contains unit and integration tests for `zoomd` functionality, including:

- `core` module tests: fetching tiles across tile groups, walking rows, probing
  pyramid extents, the request limit, and handing tiles to a composer.
- `stitch` module tests: ImageMagick and Pillow composers and their failures.
- CLI, configuration and utility tests.
- A fake tile server (`fakes.py`) standing in for `aiohttp.ClientSession`.
- Async tests using `pytest.mark.asyncio` and `monkeypatch` for patching.

Usage:

    # Run all tests in the package
    pytest zoomd/tests

    # Run a specific test file
    pytest zoomd/tests/test_core.py
"""
