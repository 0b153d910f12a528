import random
import string

import pytest
import yaml

from stackward.errors import ConfigError
from stackward.PARSERS.plan_parser import PlanLoader
from stackward.UTILS.string_interpolation import EnvironmentInterpolator, InterpolationError


def random_string(length):
    return ''.join(random.choice(string.printable) for _ in range(length))


@pytest.mark.parametrize("fmt", ["yaml", "json", "toml"])
def test_fuzz_plan_loader(fmt):
    """Random input is either a valid plan or a ConfigError, never a crash."""
    loader = PlanLoader(context={})
    for _ in range(200):
        content = random_string(random.randint(0, 500))
        try:
            loader.load_from_string(content, fmt=fmt)
        except ConfigError:
            pass


def test_fuzz_plan_loader_structured():
    """Well-formed YAML with random service fields only fails with ConfigError."""
    loader = PlanLoader(context={})
    values = [None, 0, -1, 3.5, "", "x", "/abs", "rel/path", [], {}, ["a"], {"a": 1}, True]
    keys = ["image", "command", "mounts", "environment", "ports", "resources",
            "healthcheck", "depends_on", "hostname"]
    for _ in range(300):
        service = {"name": "svc"}
        for key in random.sample(keys, random.randint(0, len(keys))):
            service[key] = random.choice(values)
        try:
            loader.load_from_string(yaml.safe_dump({"services": [service]}))
        except ConfigError:
            pass


def test_fuzz_interpolation():
    for _ in range(200):
        content = random_string(random.randint(0, 200))
        try:
            EnvironmentInterpolator.interpolate(content, {"HOME": "/root"})
        except InterpolationError:
            pass


def test_edge_cases_plan_loader():
    loader = PlanLoader(context={})

    # Empty string
    with pytest.raises(ConfigError):
        loader.load_from_string("")

    # Only whitespace
    with pytest.raises(ConfigError):
        loader.load_from_string("   \n\t  ")

    # Services that are not mappings
    with pytest.raises(ConfigError):
        loader.load_from_string("services: [1, 2, 3]")
