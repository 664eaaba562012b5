import pytest

from keyops.errors import SourceError, UsageError
from keyops.records import FieldRecord, load_records, parse_records

SOURCE = """\
- key: service:payments
  values:
    timeout: 30
    enabled: true
    ratio: 1.5
    owner: team-a
    note: null
- key: 42
  values:
    retries: 3
"""


def test_load_renders_scalars_like_yq(tmp_path):
    path = tmp_path / "params.yaml"
    path.write_text(SOURCE)
    records = load_records(path)
    assert records == [
        FieldRecord(
            "service:payments",
            {"timeout": "30", "enabled": "true", "ratio": "1.5", "owner": "team-a", "note": ""},
        ),
        FieldRecord("42", {"retries": "3"}),
    ]


def test_missing_file(tmp_path):
    with pytest.raises(SourceError, match="not found"):
        load_records(tmp_path / "absent.yaml")


def test_source_errors_are_usage_errors():
    assert issubclass(SourceError, UsageError)
    assert SourceError("x").exit_code == 1


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- key: a\n  values: {unclosed\n")
    with pytest.raises(SourceError):
        load_records(path)


def test_empty_file_has_no_records(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_records(path) == []


def test_record_without_values_is_kept_empty():
    assert parse_records([{"key": "a"}]) == [FieldRecord("a", {})]


@pytest.mark.parametrize(
    "data",
    [
        {"key": "a"},
        ["not a mapping"],
        [{"values": {"f": "v"}}],
        [{"key": "", "values": {"f": "v"}}],
        [{"key": "a", "values": ["f", "v"]}],
        [{"key": "a", "values": {"f": {"nested": 1}}}],
        [{"key": "a", "values": {"f": [1, 2]}}],
    ],
)
def test_malformed_sources(data):
    with pytest.raises(SourceError):
        parse_records(data, "params.yaml")


@pytest.mark.parametrize("values", ["[]", '""', "0", "text"])
def test_values_that_are_not_a_mapping(tmp_path, values):
    path = tmp_path / "params.yaml"
    path.write_text(f"- key: a\n  values: {values}\n")
    with pytest.raises(SourceError, match="not a mapping"):
        load_records(path)


def test_field_names_render_like_values(tmp_path):
    path = tmp_path / "params.yaml"
    path.write_text("- key: flags\n  values:\n    yes: on\n    404: missing\n")
    assert load_records(path) == [FieldRecord("flags", {"true": "true", "404": "missing"})]
