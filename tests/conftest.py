import pytest


EXAMPLE_DUMP_LINES = [
    "PRE1",
    "DROP TABLE `t1`;",
    "INS1",
    "UNLOCK TABLES;",
    "DROP TABLE `t2`;",
    "INS2",
    "UNLOCK TABLES;",
    "POST1",
]


@pytest.fixture
def write_dump(tmp_path):
    """Return a helper that writes dump lines to a file and returns its path."""
    def _write(lines, name="dump.sql"):
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path
    return _write


@pytest.fixture
def example_dump(write_dump):
    return write_dump(EXAMPLE_DUMP_LINES)
