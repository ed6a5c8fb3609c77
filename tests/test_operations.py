import pytest

from bitwise_engine.bits import (
    bits_from_bytes,
    bits_to_bytes,
    bits_to_hex,
    changed_ranges,
    hash_bits,
    load_bits,
    mismatch_positions,
    ranges_overlap,
    validate_bits,
)
from bitwise_engine.errors import InvalidBitsError
from bitwise_engine.metrics import MetricsCalculator, metrics_delta
from bitwise_engine.operations import OPERATIONS, OperationRouter, check_determinism

# ---------------------------------------------------------------------------
# Bit buffers
# ---------------------------------------------------------------------------

def test_validate_bits():
    assert validate_bits("0101") == "0101"
    assert validate_bits("") == ""
    with pytest.raises(InvalidBitsError):
        validate_bits("01a")
    with pytest.raises(InvalidBitsError):
        validate_bits(b"01")

def test_byte_conversion(tmp_path):
    assert bits_from_bytes(b"\x0f\x80") == "0000111110000000"
    assert bits_to_bytes("101") == b"\xa0"
    assert bits_to_hex("0000111110000000") == "0F 80"

    path = tmp_path / "input.bin"
    path.write_bytes(b"\xff")
    assert load_bits(path) == "11111111"

def test_hash_bits_is_sha256_of_text():
    assert hash_bits("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert hash_bits("01") != hash_bits("10")

def test_mismatch_positions_include_length_tail():
    assert mismatch_positions("0101", "0110") == [2, 3]
    assert mismatch_positions("01", "0111") == [2, 3]

def test_changed_ranges():
    assert changed_ranges("00000000", "01100001") == [(1, 3), (7, 8)]
    assert changed_ranges("0000", "0000") == []
    assert changed_ranges("0000", "000011") == [(4, 6)]
    assert changed_ranges("0001", "00") == [(2, 4)]

def test_ranges_overlap():
    assert ranges_overlap((0, 4), (3, 5))
    assert not ranges_overlap((0, 4), (4, 8))

# ---------------------------------------------------------------------------
# Router semantics
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("operation, bits, params, expected", [
    ("NOT", "0101", {}, "1010"),
    ("AND", "1101", {"mask": "1011"}, "1001"),
    ("OR", "0100", {"mask": "0001"}, "0101"),
    ("XOR", "1100", {"mask": "10"}, "0110"),
    ("NAND", "11", {"mask": "10"}, "01"),
    ("NOR", "00", {"mask": "01"}, "10"),
    ("XNOR", "10", {"mask": "11"}, "10"),
    ("SHL", "1011", {"count": 1}, "0110"),
    ("SHR", "1011", {"count": 2}, "0010"),
    ("ROL", "1000", {"count": 1}, "0001"),
    ("ROR", "1000", {"count": 5}, "0100"),
    ("REVERSE", "1100", {}, "0011"),
    ("BSET", "0000", {"position": 2}, "0010"),
    ("BCLR", "1111", {"position": 0}, "0111"),
    ("BTOG", "0000", {"position": 3}, "0001"),
    ("INSERT", "0000", {"position": 2, "bits": "11"}, "001100"),
    ("DELETE", "101010", {"start": 1, "count": 2}, "1010"),
    ("TRUNCATE", "101010", {"count": 4}, "1010"),
    ("APPEND", "10", {"bits": "01"}, "1001"),
    ("PAD", "101", {"alignment": 4}, "1010"),
    ("PAD_LEFT", "1", {"count": 3, "value": "0"}, "001"),
    ("PAD_RIGHT", "1", {"count": 3, "value": "1"}, "111"),
    ("EXTEND", "10", {"count": 2}, "1000"),
    ("BUFFER", "1011", {}, "1011"),
    ("GRAY", "0110", {}, "0101"),
    ("GRAY", "0101", {"direction": "decode"}, "0110"),
])
def test_builtin_operations(operation, bits, params, expected):
    result = OperationRouter().apply(operation, bits, params)
    assert result.success, result.error
    assert result.bits == expected

def test_default_masks_are_identity_and_recorded():
    router = OperationRouter()
    for operation in ("AND", "OR", "XOR"):
        result = router.apply(operation, "1010", {})
        assert result.bits == "1010"
        assert "mask" in result.params
    assert router.apply("AND", "1010").params["mask"] == "1111"

def test_range_scopes_operation():
    result = OperationRouter().apply("NOT", "00000000", {"range": [2, 5]})
    assert result.bits == "00111000"
    assert result.params["range"] == [2, 5]

@pytest.mark.parametrize("bad_range", [[0, 9], [3, 1], "0:4", [0], [True, 2]])
def test_bad_range_fails(bad_range):
    result = OperationRouter().apply("NOT", "00000000", {"range": bad_range})
    assert not result.success
    assert result.bits == "00000000"

def test_unknown_operation_fails_without_raising():
    result = OperationRouter().apply("FROB", "01")
    assert not result.success
    assert "Unknown operation 'FROB'" in result.error

def test_bad_params_fail_without_raising():
    router = OperationRouter()
    assert not router.apply("BSET", "01", {"position": 5}).success
    assert not router.apply("SHL", "01", {"count": -1}).success
    assert not router.apply("INSERT", "01", {"bits": "2"}).success
    assert not router.apply("BSET", "", {}).success

def test_costs_and_length_changes():
    router = OperationRouter()
    assert router.get_cost("NOT") == 1
    assert router.get_cost("NAND") == 2
    assert router.get_cost("BUFFER") == 0
    assert router.is_length_changing("INSERT")
    assert not router.is_length_changing("NOT")
    assert router.available() == sorted(OPERATIONS)

def test_register_is_per_router():
    router = OperationRouter()
    router.register("DOUBLE", lambda bits, params: bits + bits, cost=3, length_changing=True)

    assert router.apply("DOUBLE", "10").bits == "1010"
    assert router.get_cost("DOUBLE") == 3
    assert router.is_length_changing("DOUBLE")
    assert not OperationRouter().has("DOUBLE")

    router.unregister("DOUBLE")
    assert not router.has("DOUBLE")
    assert router.get_cost("DOUBLE") == 1

def test_custom_operation_errors_are_captured():
    router = OperationRouter()
    router.register("BAD", lambda bits, params: "012")
    result = router.apply("BAD", "01")
    assert not result.success
    assert "InvalidBitsError" in result.error

def test_builtins_are_deterministic():
    router = OperationRouter()
    for operation in OPERATIONS:
        assert check_determinism(router, operation, "0110100111", {})

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

def test_metrics_values():
    m = MetricsCalculator().compute("0011")
    assert m["length"] == 4
    assert m["hamming_weight"] == 2
    assert m["balance"] == 0.5
    assert m["entropy"] == 1.0
    assert m["transition_count"] == 1
    assert m["transition_rate"] == round(1 / 3, 6)
    assert m["run_length_avg"] == 2.0

def test_metrics_of_empty_buffer_are_zero():
    assert all(v == 0 for v in MetricsCalculator().compute("").values())

def test_metrics_are_pure():
    calc = MetricsCalculator()
    assert calc.compute("0110") == calc.compute("0110")

def test_unknown_metric_raises():
    with pytest.raises(KeyError):
        MetricsCalculator().compute_one("colour", "01")

def test_custom_metric_and_delta():
    calc = MetricsCalculator()
    calc.register("leading_one", lambda bits: 1.0 if bits.startswith("1") else 0.0)
    assert "leading_one" in calc.available()
    delta = metrics_delta(calc.compute("01"), calc.compute("11"))
    assert delta["leading_one"] == 1.0
    assert delta["hamming_weight"] == 1.0
