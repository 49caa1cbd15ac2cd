import unittest
from unittest import mock

import requests

from calmirror.http import HttpClient, HttpError, backoff_seconds, is_retryable_error, retry_delay_seconds
from calmirror.retry import with_retry


class RetryPolicyTests(unittest.TestCase):
    def test_backoff_is_exponential_and_capped(self) -> None:
        for attempt, base in ((1, 1.0), (2, 2.0), (3, 4.0), (6, 30.0), (12, 30.0)):
            delay = backoff_seconds(attempt)
            self.assertGreaterEqual(delay, base)
            self.assertLessEqual(delay, base + 0.25)

    def test_retry_after_header_wins(self) -> None:
        error = HttpError("throttled", status=429, headers={"Retry-After": "7"})
        self.assertEqual(retry_delay_seconds(error, 1), 7.0)
        tiny = HttpError("throttled", status=429, headers={"retry-after": "0"})
        self.assertEqual(retry_delay_seconds(tiny, 3), 1.0)
        dated = HttpError("throttled", status=429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})
        self.assertGreaterEqual(retry_delay_seconds(dated, 1), 1.0)
        self.assertLessEqual(retry_delay_seconds(dated, 1), 1.25)

    def test_retryable_errors(self) -> None:
        for status in (429, 500, 502, 503, 504):
            self.assertTrue(is_retryable_error(HttpError("x", status=status)))
        for status in (400, 401, 403, 404, 410, None):
            self.assertFalse(is_retryable_error(HttpError("x", status=status)))
        self.assertTrue(is_retryable_error(requests.Timeout("slow")))
        self.assertTrue(is_retryable_error(requests.ConnectionError("reset")))
        self.assertFalse(is_retryable_error(ValueError("bad json")))


class WithRetryTests(unittest.TestCase):
    def test_retries_then_succeeds(self) -> None:
        sleep = mock.Mock()
        fn = mock.Mock(side_effect=[HttpError("busy", status=503), requests.Timeout("slow"), "ok"])

        with self.assertLogs("calmirror.retry", level="WARNING") as captured:
            result = with_retry("list_events", fn, sleep=sleep)

        self.assertEqual(result, "ok")
        self.assertEqual(fn.call_count, 3)
        self.assertEqual(sleep.call_count, 2)
        self.assertIn("list_events", captured.output[0])

    def test_non_retryable_error_is_raised_immediately(self) -> None:
        sleep = mock.Mock()
        fn = mock.Mock(side_effect=HttpError("bad request", status=400))

        with self.assertRaises(HttpError) as ctx:
            with_retry("create_event", fn, sleep=sleep)

        self.assertEqual(ctx.exception.status, 400)
        fn.assert_called_once()
        sleep.assert_not_called()

    def test_exhaustion_reraises_last_error(self) -> None:
        sleep = mock.Mock()
        errors = [HttpError(f"busy {index}", status=503) for index in range(3)]
        fn = mock.Mock(side_effect=errors)

        with self.assertLogs("calmirror.retry", level="WARNING"):
            with self.assertRaises(HttpError) as ctx:
                with_retry("delete_event", fn, max_attempts=3, sleep=sleep)

        self.assertIs(ctx.exception, errors[-1])
        self.assertEqual(fn.call_count, 3)
        self.assertEqual(sleep.call_count, 2)

    def test_retry_after_is_used_as_sleep(self) -> None:
        sleep = mock.Mock()
        fn = mock.Mock(side_effect=[HttpError("slow down", status=429, headers={"Retry-After": "7"}), "done"])

        with self.assertLogs("calmirror.retry", level="WARNING"):
            self.assertEqual(with_retry("fetch", fn, sleep=sleep), "done")

        sleep.assert_called_once_with(7.0)


class HttpClientTests(unittest.TestCase):
    def test_error_status_raises_http_error(self) -> None:
        response = mock.Mock(status_code=503, text="unavailable", headers={"Retry-After": "3"})
        with mock.patch("calmirror.http.requests.request", return_value=response) as request:
            with self.assertRaises(HttpError) as ctx:
                HttpClient(timeout_seconds=5).request("get", "https://example.com/x", params={"a": 1})

        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(ctx.exception.retry_after_seconds, 3.0)
        kwargs = request.call_args.kwargs
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["params"], {"a": 1})
        self.assertIn("User-Agent", kwargs["headers"])

    def test_get_json_requires_object(self) -> None:
        response = mock.Mock(status_code=200)
        response.json.return_value = [1, 2]
        with mock.patch("calmirror.http.requests.request", return_value=response):
            with self.assertRaises(HttpError):
                HttpClient().get_json("https://example.com/list")


if __name__ == "__main__":
    unittest.main()
