"""Test that the project setup is working correctly."""

import coin_indexer


def test_version() -> None:
    """Test that version is defined."""
    assert coin_indexer.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from coin_indexer import chain
    from coin_indexer import indexer
    from coin_indexer import storage

    # Just verify imports work
    assert chain is not None
    assert indexer is not None
    assert storage is not None
