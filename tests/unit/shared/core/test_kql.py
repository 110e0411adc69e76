import pytest

from cloudrecon.shared.core.kql import kql_string, odata_string


@pytest.mark.parametrize(
    "raw,encoded",
    [
        ("vm1", "'vm1'"),
        ("o'brien", "'o\\'brien'"),
        ("C:\\temp", "'C:\\\\temp'"),
        ("a\nb\rc", "'a\\nb\\rc'"),
    ],
)
def test_kql_string_escapes(raw, encoded):
    assert kql_string(raw) == encoded


def test_kql_string_cannot_break_out_of_literal():
    encoded = kql_string("x' | project secret | where '1'=='1")
    # Every quote inside the literal is escaped
    inner = encoded[1:-1]
    assert all(inner[i - 1] == "\\" for i, c in enumerate(inner) if c == "'")


def test_odata_string_doubles_quotes():
    assert odata_string("Microsoft.Compute/virtualMachines") == "'Microsoft.Compute/virtualMachines'"
    assert odata_string("it's") == "'it''s'"
