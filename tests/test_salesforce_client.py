"""Tests for the Salesforce REST client's transport setup."""

import asyncio
import json

import pytest
import requests

from org_migrator.clients.salesforce import SalesforceClient
from org_migrator.models.execution import OrgDescriptor

ORG = OrgDescriptor(org_id="00D1", instance_url="https://target.example.com", access_token="token")


def _retry_policy(client):
    return client._session.get_adapter("https://target.example.com").max_retries


@pytest.mark.parametrize("method,retried", [
    ("GET", True),
    ("DELETE", True),
    ("POST", False),
    ("PATCH", False),
])
def test_transport_retries_only_reads_and_deletes(method, retried):
    policy = _retry_policy(SalesforceClient(ORG))

    assert policy.is_retry(method, 502) is retried
    assert policy.is_retry(method, 429) is retried


def test_session_sends_bearer_token():
    client = SalesforceClient(ORG)

    assert client._session.headers["Authorization"] == "Bearer token"


class _RecordingSession:
    """Stands in for requests.Session and answers every call with one response."""

    def __init__(self, status_code, body):
        self.status_code = status_code
        self.body = body
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url))
        response = requests.Response()
        response.status_code = self.status_code
        response._content = json.dumps(self.body).encode()
        return response


def test_failed_insert_is_reported_once():
    session = _RecordingSession(502, [{"errorCode": "SERVER_UNAVAILABLE", "message": "Bad gateway"}])
    client = SalesforceClient(ORG, session=session)

    result = asyncio.run(client.bulk_insert("Pay_Code__c", [{"Name": "PC-1"}]))

    assert not result.success
    assert result.error == "SERVER_UNAVAILABLE: Bad gateway"
    assert session.calls == [("POST", "https://target.example.com/services/data/v59.0/composite/sobjects")]


def test_insert_results_carry_created_flag():
    session = _RecordingSession(200, [{"id": "a0X1", "success": True, "created": True, "errors": []}])
    client = SalesforceClient(ORG, session=session)

    result = asyncio.run(client.bulk_insert("Pay_Code__c", [{"Name": "PC-1"}]))

    assert result.success
    assert [(r.id, r.created) for r in result.data] == [("a0X1", True)]
