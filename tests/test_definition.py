import pytest

from coordinator.definition import is_valid_tag, parse_definition
from coordinator.errors import InvalidDefinition


def test_parse_expands_steps_and_tags():
    parsed = parse_definition(
        {
            "name": "backend",
            "timeout": 900,
            "jobs": [
                {
                    "name": "build",
                    "capabilities": ["Linux", "linux", "docker"],
                    "volumes": ["cache"],
                    "image": "python:3.12",
                    "steps": ["make deps", {"name": "compile", "run": "make"}],
                },
                {"name": "docs", "required": False, "steps": ["make docs"], "timeout": 60},
            ],
        }
    )

    assert parsed.name == "backend"
    assert parsed.timeout_seconds == 900
    build, docs = parsed.jobs
    assert [(step.name, step.command) for step in build.steps] == [("step-1", "make deps"), ("compile", "make")]
    assert build.capabilities == ["docker", "linux", "volume:cache"]
    assert build.volumes == ["cache"]
    assert build.image == "python:3.12"
    assert build.timeout_seconds is None
    assert docs.required is False
    assert docs.timeout_seconds == 60


def test_dependencies_are_ordered_before_dependents():
    parsed = parse_definition(
        {
            "jobs": [
                {"name": "deploy", "steps": ["d"], "needs": ["test", "lint"]},
                {"name": "test", "steps": ["t"], "needs": ["build"]},
                {"name": "build", "steps": ["b"]},
                {"name": "lint", "steps": ["l"]},
            ]
        }
    )
    assert [job.name for job in parsed.jobs] == ["build", "lint", "test", "deploy"]


@pytest.mark.parametrize(
    "definition, message",
    [
        ([], "JSON object"),
        ({"jobs": []}, "non-empty"),
        ({"jobs": [{"name": "a", "steps": []}]}, "at least one step"),
        ({"jobs": [{"name": "a", "steps": ["   "]}]}, "empty command"),
        ({"jobs": [{"name": "a", "steps": ["x"]}, {"name": "a", "steps": ["y"]}]}, "duplicate"),
        ({"jobs": [{"name": "a", "steps": ["x"], "needs": ["missing"]}]}, "unknown job"),
        ({"jobs": [{"name": "a", "steps": ["x"], "needs": ["a"]}]}, "needs itself"),
        ({"jobs": [{"name": "a", "steps": ["x"], "capabilities": ["bad tag"]}]}, "malformed"),
        ({"jobs": [{"name": "a", "steps": ["x"], "volumes": ["a/b"]}]}, "plain name"),
        ({"jobs": [{"name": "a", "steps": ["x"], "timeout": 0}]}, "positive"),
        ({"jobs": [{"name": "a", "steps": ["x"], "required": "yes"}]}, "boolean"),
        ({"jobs": [{"name": "a", "steps": ["x"], "required": False}]}, "at least one job must be required"),
        ({"jobs": [{"name": "", "steps": ["x"]}]}, "name"),
    ],
)
def test_invalid_definitions_are_rejected(definition, message):
    with pytest.raises(InvalidDefinition, match=message):
        parse_definition(definition)


def test_cycles_are_reported():
    with pytest.raises(InvalidDefinition, match="cycle"):
        parse_definition(
            {
                "jobs": [
                    {"name": "a", "steps": ["x"], "needs": ["c"]},
                    {"name": "b", "steps": ["x"], "needs": ["a"]},
                    {"name": "c", "steps": ["x"], "needs": ["b"]},
                ]
            }
        )


def test_tag_validation():
    assert is_valid_tag("volume:cache")
    assert is_valid_tag("os/linux")
    assert not is_valid_tag("Upper")
    assert not is_valid_tag("-leading")
    assert not is_valid_tag("")
