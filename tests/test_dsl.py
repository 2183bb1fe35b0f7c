import pytest

from gpucontainer.dsl import (
    Comparator,
    DslError,
    compare_string,
    compare_version,
    evaluate,
)


def make_rules(calls):
    def version_rule(name):
        def rule(data, cmp, value):
            calls.append((name, cmp, value))
            return compare_version(data[name], cmp, value)

        return rule

    def brand_rule(data, cmp, value):
        calls.append(("brand", cmp, value))
        return compare_string(data["brand"], cmp, value)

    return {"cuda": version_rule("cuda"), "driver": version_rule("driver"), "brand": brand_rule}


DATA = {"cuda": "12.2", "driver": "535.104.05", "brand": "geforce"}


def test_version_equal_ignores_trailing_zeros():
    assert compare_version("1.0.0", Comparator.EQUAL, "1")
    assert not compare_version("1.0.0", Comparator.NOT_EQUAL, "1")


def test_version_numeric_not_lexical():
    assert compare_version("10.2", Comparator.GREATER, "9.9")
    assert not compare_version("10.2", Comparator.LESS, "9.9")


def test_version_longer_is_greater():
    assert compare_version("1.2.1", Comparator.GREATER, "1.2")
    assert compare_version("1.2", Comparator.LESS_EQUAL, "1.2.1")


@pytest.mark.parametrize(
    "v1,v2",
    [("1.0", "1"), ("1.01", "1"), ("11.4", "12.0"), ("535.104.05", "535.104"), ("", "3")],
)
def test_version_comparators_are_complementary(v1, v2):
    assert compare_version(v1, Comparator.LESS, v2) != compare_version(v1, Comparator.GREATER_EQUAL, v2)
    assert compare_version(v1, Comparator.GREATER, v2) != compare_version(v1, Comparator.LESS_EQUAL, v2)
    assert compare_version(v1, Comparator.EQUAL, v2) != compare_version(v1, Comparator.NOT_EQUAL, v2)


@pytest.mark.parametrize("bad", ["1.a", ".1", "1-2", str(2**64 - 1)])
def test_version_invalid(bad):
    with pytest.raises(DslError):
        compare_version(bad, Comparator.EQUAL, "1")


def test_string_compare_case_insensitive():
    assert compare_string("Tesla", Comparator.EQUAL, "tesla")
    assert compare_string("Tesla", Comparator.NOT_EQUAL, "quadro")


def test_string_compare_ordering_unsupported():
    with pytest.raises(DslError):
        compare_string("tesla", Comparator.LESS, "quadro")


def test_or_short_circuits_on_first_satisfied_alternative():
    calls = []
    evaluate("cuda>=13.0 cuda>=12.0 driver>=1", DATA, make_rules(calls))
    assert calls == [
        ("cuda", Comparator.GREATER_EQUAL, "13.0"),
        ("cuda", Comparator.GREATER_EQUAL, "12.0"),
    ]


def test_and_stops_at_first_failure():
    calls = []
    evaluate("cuda>=13.0,driver>=500 cuda>=12.0", DATA, make_rules(calls))
    assert calls == [
        ("cuda", Comparator.GREATER_EQUAL, "13.0"),
        ("cuda", Comparator.GREATER_EQUAL, "12.0"),
    ]


def test_extra_separators_are_skipped():
    calls = []
    evaluate(" ,cuda>=12.0,, ", DATA, make_rules(calls))
    assert calls == [("cuda", Comparator.GREATER_EQUAL, "12.0")]


def test_bang_alone_means_not_equal_and_names_are_case_insensitive():
    calls = []
    evaluate("BRAND!tesla", DATA, make_rules(calls))
    assert calls == [("brand", Comparator.NOT_EQUAL, "tesla")]


def test_unsatisfied_condition_reports_first_alternative():
    with pytest.raises(DslError, match=r"^unsatisfied condition: brand=tesla,driver>=1$"):
        evaluate("brand=tesla,driver>=1 brand=quadro", DATA, make_rules([]))


def test_unsatisfied_cuda_requirement_suggests_update():
    with pytest.raises(DslError, match="please update your driver to a newer version"):
        evaluate("cuda>=13.0", DATA, make_rules([]))


@pytest.mark.parametrize(
    "predicate",
    ["cuda", "=12.0", "cuda>=", "gpu>=1", "cuda=>1", "brand<tesla", "cuda>=1.x"],
)
def test_invalid_expressions(predicate):
    with pytest.raises(DslError, match="^invalid expression$"):
        evaluate(predicate, DATA, make_rules([]))


def test_overlong_failing_expression_is_invalid():
    value = "9" * 130
    with pytest.raises(DslError, match="^invalid expression$"):
        evaluate(f"driver>={value}", DATA, make_rules([]))