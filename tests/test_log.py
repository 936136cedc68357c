import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blockml  # noqa: E402
from blockml import Node, compile_graph  # noqa: E402


def test_library_is_silent_until_configured():
    messages = []
    blockml.configure_logging("DEBUG", sink=messages.append)
    try:
        compile_graph([Node("x", "Teleport"), Node("d", "Dense")])
    finally:
        blockml.disable_logging()
    text = "".join(str(m) for m in messages)
    assert "unknown block type Teleport" in text
    assert "Compiled 1 layers" in text

    messages.clear()
    compile_graph([Node("d", "Dense")])
    assert messages == []
