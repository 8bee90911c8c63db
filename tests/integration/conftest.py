# Copyright 2026 dparv
# See LICENSE file for licensing details.

import os
import pathlib

import jubilant
import pytest


@pytest.fixture(scope="module")
def juju():
    with jubilant.temp_model() as juju:
        yield juju


@pytest.fixture(scope="session")
def charm():
    if path := os.environ.get("CHARM_PATH"):
        return pathlib.Path(path)
    charms = sorted(pathlib.Path(".").glob("*.charm"))
    if not charms:
        raise FileNotFoundError("no .charm file found; run `charmcraft pack` first")
    return charms[0]
