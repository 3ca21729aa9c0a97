"""
Tests for the domain services (mocked HTTP session).
"""
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
import pytest
import requests

from tally_dashboard.cache import RequestFingerprint
from tally_dashboard.dashboard import TallyDashboard
from tally_dashboard.errors import NetworkUnreachable, ValidationError
from tally_dashboard.models import PaginatedResult, Voucher
from tally_dashboard.requests import DateRange
from tally_dashboard.services.base import adjacent_pages, paginate
from tally_dashboard.services.sales import SALES_COUNT, SALES_PAGE
from conftest import COMPANY, ok, read

RANGE = DateRange("20240401", "20240630")


def vouchers(n):
    body = "".join(
        f"<VOUCHER><GUID>g-{i}</GUID><AMOUNT>-{i + 1}00.00</AMOUNT></VOUCHER>" for i in range(n)
    )
    return f"<ENVELOPE><BODY><DATA><COLLECTION>{body}</COLLECTION></DATA></BODY></ENVELOPE>"


def posted(session, i=-1):
    return session.post.call_args_list[i].kwargs["data"].decode("utf-8")


class TestPagination:

    def test_full_page_has_more(self):
        page = paginate(list(range(100)), page=1, page_size=100)
        assert page.has_more is True
        assert page.total_is_estimate is True

    def test_short_page_is_last(self):
        page = paginate(list(range(37)), page=1, page_size=100)
        assert page.has_more is False
        assert page.total_count == 37

    def test_estimate_on_later_page(self):
        assert paginate(list(range(10)), page=3, page_size=10).total_count == 30
        assert paginate(list(range(4)), page=3, page_size=10).total_count == 24

    def test_known_total_reached(self):
        page = paginate([1, 2], page=1, page_size=2, total=2)
        assert page.has_more is False
        assert page.total_is_estimate is False

    def test_known_total_reconciled_upward(self):
        page = paginate([1, 2], page=3, page_size=2, total=3)
        assert page.total_count == 6

    def test_adjacent_pages(self):
        assert adjacent_pages(paginate([1, 2], page=2, page_size=2, total=10)) == [1, 3, 4]
        assert adjacent_pages(paginate([1, 2], page=1, page_size=2, total=2)) == []
        assert adjacent_pages(paginate([1, 2], page=1, page_size=2)) == [2, 3]
        assert adjacent_pages(paginate([1], page=4, page_size=2)) == [3]


class TestSalesService:

    def test_end_to_end_page(self, dashboard, session):
        session.post.return_value = ok(read("sales_page.xml"))

        result = dashboard.sales.get_page(RANGE, page=1, page_size=2, company=COMPANY)

        page = result.data
        assert isinstance(page, PaginatedResult)
        assert len(page.records) == 2
        assert [v.amount for v in page.records] == [1500.00, 2300.50]
        assert page.has_more is False
        assert page.total_count == 2
        assert result.ok and not result.from_cache and not result.stale

        # Page request, then the count query
        assert session.post.call_count == 2
        page_xml, count_xml = posted(session, 0), posted(session, 1)
        assert "<SVCURRENTCOMPANY>ACME (2024-25)</SVCURRENTCOMPANY>" in page_xml
        assert "<LIMIT>2</LIMIT>" in page_xml
        assert "SalesVouchersCount" in count_xml

    def test_cache_hit_skips_transport(self, dashboard, session):
        session.post.return_value = ok(read("sales_page.xml"))
        dashboard.sales.get_page(RANGE, page_size=2)
        calls = session.post.call_count

        again = dashboard.sales.get_page(RANGE, page_size=2, search_filter="   ")

        assert again.from_cache is True
        assert session.post.call_count == calls
        assert [v.id for v in again.data.records] == ["a1b2c3d4-0001", "voucher-1-1"]

    def test_stale_fallback_on_failure(self, dashboard, session):
        session.post.return_value = ok(read("sales_page.xml"))
        fresh = dashboard.sales.get_page(RANGE, page_size=2)

        session.post.side_effect = requests.ConnectionError("refused")
        result = dashboard.sales.get_page(RANGE, page_size=2, force_refresh=True)

        assert result.stale is True
        assert result.ok is False
        assert "Cannot connect" in result.error
        assert result.data == fresh.data

    def test_failure_without_cache_propagates(self, dashboard, session):
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(NetworkUnreachable):
            dashboard.sales.get_page(RANGE)

    def test_retry_recovers_transient_failure(self, settings, session):
        settings.retry_attempts = 2
        session.post.side_effect = [
            requests.ConnectionError("blip"),
            ok(read("sales_page.xml")),
            ok(read("sales_page.xml")),
        ]
        with TallyDashboard(settings, session=session) as dash:
            result = dash.sales.get_page(RANGE, page_size=2)
        assert result.ok
        assert session.post.call_count == 3

    def test_failed_count_falls_back_to_estimate(self, dashboard, session):
        session.post.side_effect = [ok(vouchers(2)), requests.Timeout("slow")]
        page = dashboard.sales.get_page(RANGE, page_size=2).data
        assert page.total_is_estimate is True
        assert page.has_more is True

    def test_later_page_reuses_count(self, dashboard, session):
        def post(url, data, timeout):
            return ok(vouchers(5) if b"SalesVouchersCount" in data else vouchers(2))

        session.post.side_effect = post
        first = dashboard.sales.get_page(RANGE, page_size=2).data
        assert first.total_count == 5
        assert first.has_more is True
        calls = session.post.call_count

        second = dashboard.sales.get_page(RANGE, page=2, page_size=2).data

        assert session.post.call_count == calls + 1
        assert "SalesVouchersCount" not in posted(session)
        assert "<SKIP>2</SKIP>" in posted(session)
        assert second.total_count == 5
        assert second.total_is_estimate is False

    def test_joins_in_flight_fetch(self, dashboard, session):
        fp = RequestFingerprint.create(SALES_PAGE, RANGE, COMPANY, 1, 2, None)
        pending = Future()
        dashboard.in_flight.register_in_flight(fp, pending)
        expected = paginate([Voucher(id="joined")], 1, 2)

        with ThreadPoolExecutor(max_workers=1) as pool:
            call = pool.submit(dashboard.sales.get_page, RANGE, 1, 2)
            time.sleep(0.1)
            assert not call.done()
            pending.set_running_or_notify_cancel()
            pending.set_result(expected)
            result = call.result(timeout=5)

        assert result.data == expected
        session.post.assert_not_called()
        assert dashboard.sales.get_page(RANGE, 1, 2).from_cache is True

    def test_failed_prefetch_makes_joiner_fetch(self, dashboard, session):
        session.post.return_value = ok(read("sales_page.xml"))
        fp = RequestFingerprint.create(SALES_PAGE, RANGE, COMPANY, 1, 2, None)
        pending = Future()
        dashboard.in_flight.register_in_flight(fp, pending)

        with ThreadPoolExecutor(max_workers=1) as pool:
            call = pool.submit(dashboard.sales.get_page, RANGE, 1, 2)
            time.sleep(0.05)
            pending.set_running_or_notify_cancel()
            pending.set_result(None)
            result = call.result(timeout=5)

        assert len(result.data.records) == 2
        assert session.post.call_count == 2

    def test_concurrent_callers_share_one_fetch(self, dashboard, session):
        gate = threading.Event()

        def post(url, data, timeout):
            gate.wait(5)
            return ok(read("sales_page.xml"))

        session.post.side_effect = post
        with ThreadPoolExecutor(max_workers=2) as pool:
            a = pool.submit(dashboard.sales.get_page, RANGE, 1, 2)
            time.sleep(0.05)
            b = pool.submit(dashboard.sales.get_page, RANGE, 1, 2)
            time.sleep(0.05)
            gate.set()
            ra, rb = a.result(timeout=5), b.result(timeout=5)

        assert ra.data == rb.data
        # One page request plus one count request
        assert session.post.call_count == 2

    def test_prefetch_fills_next_pages(self, settings, session):
        settings.prefetch = True

        def post(url, data, timeout):
            return ok(vouchers(6) if b"SalesVouchersCount" in data else vouchers(2))

        session.post.side_effect = post
        with TallyDashboard(settings, session=session) as dash:
            dash.sales.get_page(RANGE, page_size=2)
            # Single-worker executor: this runs after the queued prefetches
            dash.prefetcher.submit(lambda: None).result(timeout=5)

            for page in (2, 3):
                assert dash.cache.has(RequestFingerprint.create(SALES_PAGE, RANGE, COMPANY, page, 2, None))
            assert not dash.cache.has(RequestFingerprint.create(SALES_PAGE, RANGE, COMPANY, 4, 2, None))

            calls = session.post.call_count
            result = dash.sales.get_page(RANGE, page=3, page_size=2)
            assert result.from_cache is True
            assert result.data.has_more is False

        # Page 1, count, pages 2 and 3
        assert calls == 4

    def test_refresh_drops_cached_pages(self, dashboard, session):
        session.post.return_value = ok(read("sales_page.xml"))
        dashboard.sales.get_page(RANGE, page_size=2)

        assert dashboard.sales.refresh(RANGE) == 2
        assert not dashboard.cache.has(RequestFingerprint.create(SALES_COUNT, RANGE, COMPANY))
        assert dashboard.sales.get_page(RANGE, page_size=2).from_cache is False

    def test_invalid_input_raises_before_network(self, dashboard, session):
        with pytest.raises(ValidationError):
            dashboard.sales.get_page(RANGE, page=0)
        with pytest.raises(ValidationError):
            dashboard.sales.get_details("  ")
        session.post.assert_not_called()

    def test_voucher_details(self, dashboard, session):
        session.post.return_value = ok(read("voucher_details.xml"))

        voucher = dashboard.sales.get_details("guid-0017").data

        assert voucher.voucher_number == "S-117"
        assert len(voucher.line_items) == 2
        assert "<SVVOUCHERGUID>guid-0017</SVVOUCHERGUID>" in posted(session)

    def test_statistics_and_top_customers(self, dashboard, session):
        session.post.return_value = ok(read("sales_page.xml"))

        stats = dashboard.sales.get_statistics(RANGE).data
        top = dashboard.sales.get_top_customers(RANGE, limit=1)

        assert stats.total_sales == 3800.5
        assert stats.total_vouchers == 2
        assert [c.name for c in top.data] == ["Kalinga Hardware & Sons"]
        assert top.from_cache is True
        assert session.post.call_count == 1


class TestOtherServices:

    def test_stock_items_paged_locally(self, dashboard, session):
        session.post.return_value = ok(read("stock_items.xml"))

        page = dashboard.inventory.get_page(page=1, page_size=1).data
        assert [i.name for i in page.records] == ["Ball Valve 1 inch"]
        assert page.total_count == 2
        assert page.has_more is True

        found = dashboard.inventory.get_page(search_filter="bv-1").data
        assert [i.name for i in found.records] == ["Ball Valve 1 inch"]
        assert found.has_more is False

        assert session.post.call_count == 1
        assert "<TYPE>StockItem</TYPE>" in posted(session)

    def test_inventory_refresh(self, dashboard, session):
        session.post.return_value = ok(read("stock_items.xml"))
        dashboard.inventory.get_stock_items()
        assert dashboard.inventory.refresh() == 1
        dashboard.inventory.get_stock_items()
        assert session.post.call_count == 2

    def test_company_list_and_details(self, dashboard, session):
        session.post.return_value = ok(read("company_list.xml"))
        companies = dashboard.company.list_companies().data
        assert [c.name for c in companies] == ["ACME (2024-25)", "Bharat Traders (2025-26)"]
        assert "<SVCURRENTCOMPANY>" not in posted(session)

        session.post.return_value = ok(read("company_details.xml"))
        details = dashboard.company.get_details().data
        assert details.state_name == "Odisha"
        assert '<ID TYPE="Name">ACME (2024-25)</ID>' in posted(session)

        tax = dashboard.company.get_tax_details().data
        assert tax.income_tax_number == "ABCDE1234F"

    def test_balance_sheet(self, dashboard, session):
        session.post.return_value = ok(read("balance_sheet.xml"))

        sheet = dashboard.balance_sheet.get_balance_sheet(RANGE).data

        assert sheet.total_assets == 670000.5
        assert sheet.total_liabilities == 620000.0
        assert "<ID>Balance Sheet</ID>" in posted(session)

    def test_balance_sheet_stale_fallback(self, dashboard, session):
        session.post.return_value = ok(read("balance_sheet.xml"))
        dashboard.balance_sheet.get_balance_sheet(RANGE)

        session.post.return_value = ok("Could not set 'SVCurrentCompany' to 'ACME (2024-25)'")
        result = dashboard.balance_sheet.get_balance_sheet(RANGE, force_refresh=True)

        assert result.stale is True
        assert "ACME (2024-25)" in result.error
        assert result.data.total_assets == 670000.5


class TestDashboard:

    def test_configure_and_select_company(self, dashboard):
        config = dashboard.configure("10.0.0.5:9100", "Bharat Traders (2025-26)")
        assert config.server_url == "http://10.0.0.5:9100"
        assert dashboard.resolver.require_company() == "Bharat Traders (2025-26)"
        dashboard.select_company("ACME (2024-25)")
        assert dashboard.config.active_company == "ACME (2024-25)"

    def test_reset_clears_cache(self, dashboard, session):
        session.post.return_value = ok(read("company_list.xml"))
        dashboard.company.list_companies()
        dashboard.reset()
        assert len(dashboard.cache) == 0
        assert dashboard.config.server_address is None

    def test_test_connection(self, dashboard, session):
        session.post.return_value = ok(read("company_list.xml"))
        assert dashboard.test_connection()["status"] == "connected"


class TestPrefetchLifecycle:

    def test_cancelled_prefetch_releases_registry(self, settings, session):
        settings.prefetch = True
        with TallyDashboard(settings, session=session) as dash:
            gate = threading.Event()
            dash.prefetcher.submit(gate.wait, 5)
            fp = RequestFingerprint.create(SALES_PAGE, RANGE, COMPANY, 2, 2, None)

            assert dash.sales._schedule_prefetch([(fp, lambda: pytest.fail("cancelled job ran"))]) == 1
            assert dash.in_flight.get_in_flight(fp) is not None

            dash.prefetcher.shutdown(wait=False, cancel_futures=True)
            gate.set()

            assert dash.in_flight.get_in_flight(fp) is None
        session.post.assert_not_called()

    def test_close_leaves_no_pending_prefetch(self, settings, session):
        settings.prefetch = True
        gate, page_two_started = threading.Event(), threading.Event()

        def post(url, data, timeout):
            if b"SalesVouchersCount" in data:
                return ok(vouchers(10))
            if b"<SKIP>2</SKIP>" in data:
                page_two_started.set()
                gate.wait(5)
            return ok(vouchers(2))

        session.post.side_effect = post
        dash = TallyDashboard(settings, session=session)
        dash.sales.get_page(RANGE, page_size=2)
        assert page_two_started.wait(5)

        closer = threading.Thread(target=dash.close)
        closer.start()
        time.sleep(0.1)
        gate.set()
        closer.join(5)

        assert not closer.is_alive()
        for page in (2, 3):
            fp = RequestFingerprint.create(SALES_PAGE, RANGE, COMPANY, page, 2, None)
            assert dash.in_flight.get_in_flight(fp) is None


class TestStaleAfterExpiry:

    def test_expired_entry_answers_when_refetch_fails(self, settings, session):
        settings.cache_ttl = 0.05
        settings.count_ttl = 0.05
        session.post.return_value = ok(read("sales_page.xml"))
        with TallyDashboard(settings, session=session) as dash:
            fresh = dash.sales.get_page(RANGE, page_size=2)
            time.sleep(0.1)

            session.post.side_effect = requests.Timeout("slow")
            result = dash.sales.get_page(RANGE, page_size=2)

        assert result.stale is True
        assert result.from_cache is True
        assert result.data == fresh.data
        assert "did not answer" in result.error
