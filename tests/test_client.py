"""
Tests for the Tally transport: error classification and FIFO ordering.
"""
import threading
import time
from unittest.mock import Mock
import pytest
import requests

from tally_dashboard.client import DEFAULT_HEADERS, TallyTransport, check_application_error
from tally_dashboard.config import ConfigResolver, ConfigStore
from tally_dashboard.errors import (
    NetworkUnreachable,
    RequestTimeout,
    TransportError,
    UpstreamApplicationError,
    UpstreamHttpError,
    ValidationError,
)
from conftest import ok, read


@pytest.fixture
def transport(resolver, session):
    t = TallyTransport(resolver, timeout=5, session=session)
    yield t
    t.close()


class TestClassification:

    def test_success_returns_body(self, transport, session):
        body = read("sales_page.xml")
        session.post.return_value = ok(body)

        assert transport.send("<ENVELOPE/>") == body
        url = session.post.call_args.args[0]
        assert url == "http://127.0.0.1:9000"
        assert session.post.call_args.kwargs["data"] == b"<ENVELOPE/>"
        assert session.post.call_args.kwargs["timeout"] == 5

    def test_headers_installed(self, transport, session):
        assert session.headers["Content-Type"] == DEFAULT_HEADERS["Content-Type"]
        assert "no-cache" in session.headers["Cache-Control"]

    def test_connection_error(self, transport, session):
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(NetworkUnreachable) as exc:
            transport.send("<ENVELOPE/>")
        assert exc.value.remedies

    def test_timeout(self, transport, session):
        session.post.side_effect = requests.Timeout("slow")
        with pytest.raises(RequestTimeout) as exc:
            transport.send("<ENVELOPE/>")
        assert isinstance(exc.value, TimeoutError)
        assert isinstance(exc.value, TransportError)

    def test_http_error(self, transport, session):
        session.post.return_value = Mock(status_code=502, reason="Bad Gateway", text="<html/>")
        with pytest.raises(UpstreamHttpError) as exc:
            transport.send("<ENVELOPE/>")
        assert exc.value.status_code == 502

    def test_company_not_loaded_literal(self, transport, session):
        session.post.return_value = ok("Could not set 'SVCurrentCompany' to 'XYZ'")
        with pytest.raises(UpstreamApplicationError) as exc:
            transport.send("<ENVELOPE/>")
        assert exc.value.identifier == "XYZ"

    def test_company_not_loaded_in_lineerror(self):
        with pytest.raises(UpstreamApplicationError) as exc:
            check_application_error(read("company_not_found.xml"))
        assert exc.value.identifier == "XYZ"
        assert "Could not set 'SVCurrentCompany' to 'XYZ'" in exc.value.message

    def test_status_zero(self):
        with pytest.raises(UpstreamApplicationError) as exc:
            check_application_error(read("status_error.xml"))
        assert exc.value.identifier is None
        assert "Unknown Request" in exc.value.message

    def test_clean_body_passes(self):
        check_application_error(read("sales_page.xml"))

    def test_error_words_inside_exported_data_pass(self):
        body = (
            "<ENVELOPE><BODY><DATA><COLLECTION><VOUCHER><GUID>g1</GUID>"
            "<NARRATION>Could not find the Report card, resent by mail</NARRATION>"
            "<PARTYLEDGERNAME>Could not set &apos;SVCurrentCompany&apos; to &apos;X&apos; Traders</PARTYLEDGERNAME>"
            "</VOUCHER></COLLECTION></DATA></BODY></ENVELOPE>"
        )
        check_application_error(body)

    def test_missing_report_in_bare_envelope(self):
        with pytest.raises(UpstreamApplicationError) as exc:
            check_application_error("<ENVELOPE>Could not find Report 'Balance Sheet'</ENVELOPE>")
        assert "Could not find Report" in exc.value.message

    def test_unconfigured_server_fails_before_posting(self, settings, session):
        settings.tally_url = None
        resolver = ConfigResolver(settings, ConfigStore(settings.config_file))
        with TallyTransport(resolver, session=session) as t:
            with pytest.raises(ValidationError):
                t.send("<ENVELOPE/>")
        session.post.assert_not_called()

    def test_closed_transport_rejects_requests(self, transport):
        transport.close()
        with pytest.raises(TransportError):
            transport.submit("<ENVELOPE/>")


class TestQueue:

    def test_later_request_waits_for_earlier(self, transport, session):
        gate = threading.Event()
        started, finished = [], []

        def post(url, data, timeout):
            body = data.decode("utf-8")
            started.append((body, time.monotonic()))
            if body == "<A/>":
                gate.wait(5)
            finished.append((body, time.monotonic()))
            return ok(f"<ENVELOPE>{body}</ENVELOPE>")

        session.post.side_effect = post

        fa = transport.submit("<A/>")
        fb = transport.submit("<B/>")
        time.sleep(0.1)
        assert [b for b, _ in started] == ["<A/>"]
        assert not fb.done()

        gate.set()
        assert fb.result(timeout=5) == "<ENVELOPE><B/></ENVELOPE>"
        assert fa.result(timeout=5) == "<ENVELOPE><A/></ENVELOPE>"

        assert [b for b, _ in started] == ["<A/>", "<B/>"]
        a_end = finished[0][1]
        b_start = started[1][1]
        assert b_start >= a_end

    def test_many_requests_complete_in_submission_order(self, transport, session):
        completed = []

        def post(url, data, timeout):
            completed.append(data.decode("utf-8"))
            return ok("<ENVELOPE/>")

        session.post.side_effect = post
        futures = [transport.submit(f"<R{i}/>") for i in range(10)]
        for f in futures:
            f.result(timeout=5)

        assert completed == [f"<R{i}/>" for i in range(10)]

    @pytest.mark.parametrize("failure,error", [
        (requests.ConnectionError("down"), NetworkUnreachable),
        (requests.Timeout("slow"), RequestTimeout),
    ])
    def test_failure_does_not_block_the_lane(self, transport, session, failure, error):
        session.post.side_effect = [failure, ok("<ENVELOPE/>")]

        first = transport.submit("<A/>")
        second = transport.submit("<B/>")

        with pytest.raises(error):
            first.result(timeout=5)
        assert second.result(timeout=5) == "<ENVELOPE/>"


class TestConnection:

    def test_connected(self, transport, session):
        session.post.return_value = ok(read("company_list.xml"))
        result = transport.test_connection("ACME (2024-25)")
        assert result["status"] == "connected"
        assert result["url"] == "http://127.0.0.1:9000"

    def test_failure_is_reported_not_raised(self, transport, session):
        session.post.side_effect = requests.ConnectionError("refused")
        result = transport.test_connection()
        assert result["status"] == "failed"
        assert "Cannot connect" in result["error"]
