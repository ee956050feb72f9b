"""Small helpers shared by the test modules."""
import time


def tick():
    """Sleep long enough for ``updated_at`` ordering to be unambiguous."""
    time.sleep(0.01)


def sibling_sorts(blocks, parent_id=None):
    """Sorted sort values of one sibling group."""
    return sorted(b.sort for b in blocks if b.parent_id == parent_id)


def paragraph(text):
    """Content payload of a paragraph block."""
    return {"text": text}
