"""
Shared fixtures: a fake HTTP session so no cluster is needed.
"""

import json
from unittest.mock import MagicMock

import pytest

from es_http import EsClient


def make_response(status=200, payload=None, text=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload if payload is not None else {}
    resp.text = text if text is not None else json.dumps(payload or {})
    return resp


@pytest.fixture
def session():
    s = MagicMock()
    s.request.return_value = make_response()
    return s


@pytest.fixture
def client(session):
    return EsClient("http://es.test:9200", session=session)


def calls(session):
    """(method, url) for every request the fake session received."""
    return [(c.args[0], c.args[1]) for c in session.request.call_args_list]
