"""Test suite for client-side identifiers."""

import re

from chat_state_sync.domain.ids import generate_id


def test_ids_are_unique():
    """Test that generated ids do not repeat."""
    ids = {generate_id() for _ in range(10000)}
    assert len(ids) == 10000


def test_ids_are_lowercase_base36():
    """Test the id alphabet."""
    assert re.fullmatch(r"[0-9a-z]+", generate_id())
