from datetime import datetime, timedelta, timezone

import pytest

from api_test_models import (
    APIResult,
    APITestCase,
    AuthConfig,
    AuthType,
    ResultStatus,
    TestSummary,
    TestSuiteOptions,
)
from engine_errors import ValidationError


class TestValidation:
    @pytest.mark.parametrize("overrides, rule", [
        ({"name": ""}, "test_name_required"),
        ({"endpoint": "users"}, "endpoint_format"),
        ({"method": "TRACE"}, "unsupported_method"),
        ({"expected_status": 99}, "expected_status_range"),
        ({"expected_status": 600}, "expected_status_range"),
        ({"timeout": 0}, "timeout_out_of_range"),
        ({"timeout": 300001}, "timeout_out_of_range"),
    ])
    def test_invalid_cases(self, overrides, rule):
        kwargs = {"name": "List users", "endpoint": "/users", **overrides}
        with pytest.raises(ValidationError) as exc_info:
            APITestCase(**kwargs)
        assert exc_info.value.rule == rule

    def test_method_is_normalized(self):
        assert APITestCase(name="x", endpoint="/x", method="patch").method == "PATCH"

    def test_expired_auth_is_rejected(self):
        expired = AuthConfig(type="bearer", credentials={"token": "t"},
                             expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        with pytest.raises(ValidationError) as exc_info:
            APITestCase(name="x", endpoint="/x", auth=expired)
        assert exc_info.value.rule == "auth_expired"

    def test_missing_credentials(self):
        with pytest.raises(ValidationError):
            APITestCase(name="x", endpoint="/x", auth={"type": "basic", "credentials": {"username": "a"}})


class TestAuthHeaders:
    def test_each_auth_type(self):
        assert AuthConfig(type="bearer", credentials={"token": "t"}).headers() == {"Authorization": "Bearer t"}
        assert AuthConfig(type="oauth", credentials={"access_token": "o"}).headers() == {"Authorization": "Bearer o"}
        assert AuthConfig(type="apikey", credentials={"api_key": "k"}).headers() == {"X-API-Key": "k"}
        assert AuthConfig(type="apikey", credentials={"api_key": "k", "header_name": "X-Key"}).headers() == {
            "X-Key": "k"
        }
        assert AuthConfig(type="basic", credentials={"username": "ada", "password": "secret"}).headers() == {
            "Authorization": "Basic YWRhOnNlY3JldA=="
        }
        assert AuthConfig().headers() == {}
        assert AuthConfig().type == AuthType.NONE

    def test_unknown_auth_type(self):
        with pytest.raises(ValidationError):
            AuthConfig(type="kerberos")


class TestCurlSynthesis:
    def test_post_command(self):
        case = APITestCase(
            name="Create user",
            endpoint="/users",
            method="POST",
            headers={"X-Trace": "abc"},
            body={"name": "Ada"},
            timeout=1500,
            auth={"type": "bearer", "credentials": {"token": "tok"}},
        )
        assert case.curl_command == (
            "curl -X POST -H 'X-Trace: abc' -H 'Authorization: Bearer tok' "
            "-H 'Content-Type: application/json' "
            "-d '{\"name\": \"Ada\"}' --max-time 2 \"${BASE_URL}/users\""
        )
        assert case.build_curl_command("http://api.test").endswith('"http://api.test/users"')

    def test_get_has_no_body(self):
        case = APITestCase(name="List", endpoint="/users", body={"ignored": True})
        assert case.curl_command == 'curl -X GET --max-time 30 "${BASE_URL}/users"'

    def test_command_follows_header_changes(self):
        case = APITestCase(name="List", endpoint="/users")
        case.set_header("Accept", "application/json")
        assert "-H 'Accept: application/json'" in case.curl_command
        assert case.remove_header("Accept")
        assert "Accept" not in case.curl_command
        assert not case.remove_header("Accept")

    def test_header_values_are_shell_quoted(self):
        case = APITestCase(name="List", endpoint="/users", headers={"X-Home": "$HOME `id` it's"})
        assert "-H 'X-Home: $HOME `id` it'\"'\"'s'" in case.curl_command


def test_assertion_and_tag_mutators():
    case = APITestCase(name="List", endpoint="/users")
    assertion = case.add_assertion({"kind": "status", "expected_value": 200})
    assert case.remove_assertion(assertion.description)
    assert not case.remove_assertion(assertion.description)
    case.add_tag("smoke")
    case.add_tag("smoke")
    assert case.tags == ["smoke"]
    assert case.remove_tag("smoke")


def test_round_trip_and_clone():
    case = APITestCase(
        name="Create", endpoint="/users", method="POST", body={"a": 1}, tags=["x"],
        assertions=[{"kind": "body", "field": "id", "operator": "exists"}],
        auth={"type": "apikey", "credentials": {"api_key": "k"}},
    )
    restored = APITestCase.from_dict(case.to_dict())
    assert restored.id == case.id
    assert restored.curl_command == case.curl_command
    assert restored.assertions[0].field == "id"

    copy = case.clone()
    assert copy.id != case.id
    assert copy.name == "Create (copy)"


def test_result_is_immutable():
    result = APIResult(test_case_id="t", status=ResultStatus.PASSED, actual_status=200,
                       response_time=1.0, curl_command="curl")
    with pytest.raises(AttributeError):
        result.status = ResultStatus.FAILED


def test_summary_of_no_results():
    assert TestSummary.from_results([]).to_dict() == {
        "average_response_time": 0.0,
        "max_response_time": 0.0,
        "min_response_time": 0.0,
        "success_rate": 0.0,
        "error_rate": 0.0,
        "timeout_count": 0,
        "assertion_failures": 0,
    }


def test_suite_options_validation():
    with pytest.raises(ValidationError):
        TestSuiteOptions(max_concurrency=0)
    with pytest.raises(ValidationError):
        TestSuiteOptions(max_retries=-1)
