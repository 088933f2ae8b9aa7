import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from s3unzip.aws.s3_errors import describe, is_missing_upload, is_retryable_s3
from s3unzip.infra.retry import RetryPolicy, retry_on
from s3unzip.utils.humanize import human_readable_bytes


def _client_error(code, status=400):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status, "RequestId": "r1"}},
        "UploadPart",
    )


# -------------------------
# retry_on
# -------------------------
def test_retry_until_success():
    calls = []
    sleeps = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise _client_error("SlowDown", 503)
        return "ok"

    result = retry_on(flaky, RetryPolicy(attempts=3), is_retryable=is_retryable_s3, sleep=sleeps.append)

    assert result == "ok"
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_non_retryable_is_raised_immediately():
    calls = []

    def denied():
        calls.append(1)
        raise _client_error("AccessDenied", 403)

    with pytest.raises(ClientError):
        retry_on(denied, RetryPolicy(attempts=5), is_retryable=is_retryable_s3, sleep=lambda s: None)
    assert len(calls) == 1


def test_last_error_after_attempts_run_out():
    calls = []

    def down():
        calls.append(1)
        raise EndpointConnectionError(endpoint_url="http://s3")

    with pytest.raises(EndpointConnectionError):
        retry_on(down, RetryPolicy(attempts=2), is_retryable=is_retryable_s3, sleep=lambda s: None)
    assert len(calls) == 2


def test_on_retry_hook():
    seen = []
    state = {"n": 0}

    def once():
        state["n"] += 1
        if state["n"] == 1:
            raise ValueError("transient")
        return state["n"]

    retry_on(once, RetryPolicy(attempts=2), on_retry=lambda i, e, s: seen.append((i, type(e))), sleep=lambda s: None)
    assert seen == [(1, ValueError)]


def test_delay_is_capped():
    policy = RetryPolicy(base=1.0, factor=10.0, cap=2.0)
    assert 2.0 <= policy.delay(5) <= 2.5


# -------------------------
# S3 error classification
# -------------------------
@pytest.mark.parametrize(
    "code,status,expected",
    [
        ("SlowDown", 503, True),
        ("InternalError", 500, True),
        ("SomethingOdd", 502, True),
        ("AccessDenied", 403, False),
        ("NoSuchKey", 404, False),
    ],
)
def test_is_retryable_s3(code, status, expected):
    assert is_retryable_s3(_client_error(code, status)) is expected


def test_missing_upload():
    assert is_missing_upload(_client_error("NoSuchUpload", 404))
    assert not is_missing_upload(_client_error("AccessDenied", 403))
    assert not is_missing_upload(RuntimeError("x"))


def test_describe():
    assert describe(_client_error("SlowDown", 503)) == "S3 SlowDown (http=503, request_id=r1)"
    assert describe(ValueError("bad")) == "ValueError: bad"


# -------------------------
# humanize
# -------------------------
@pytest.mark.parametrize(
    "num,expected",
    [
        (None, "unknown size"),
        (-1, "unknown size"),
        (0, "0 B"),
        (999, "999 B"),
        (1000, "1.0 kB"),
        (1_234_567, "1.2 MB"),
        (20 * 1024 * 1024, "21.0 MB"),
    ],
)
def test_human_readable_bytes(num, expected):
    assert human_readable_bytes(num) == expected
