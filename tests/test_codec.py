"""
Unit tests for the IEX batch response decoder and the transport encoding.
"""

from datetime import datetime

import msgpack
import pytest

from src.core.errors import MalformedDateError, MalformedResponseError
from src.core.models import (
    ChartResult,
    GetChartsRequest,
    GetChartsResponse,
    GetQuotesResponse,
    QuoteResult,
    Range,
    Source,
    SymbolError,
    to_float32,
)
from src.core.timeutil import NEW_YORK
from src.iex.codec import (
    chart_date,
    decode_charts,
    decode_quotes,
    dump_name,
    millis_to_time,
    quote_date,
    quote_source,
)
from src.remote.wire import WireError, decode, encode

from conftest import FakeClock, day

OCT_11 = FakeClock(datetime(2018, 10, 11, 0, 0, tzinfo=NEW_YORK))


class TestDecodeQuotes:
    """Tests for quote decoding."""

    def test_real_time_quote(self):
        body = b'{"CEF": {"quote":{"companyName":"Sprott Physical Gold and Silver Trust Units","latestPrice":11.71,"latestSource":"IEX real time price","latestTime":"12:45:40 PM","latestUpdate":1538153140524,"latestVolume":478088,"open":11.61,"high":11.72,"low":11.61,"close":11.54,"change":0.17,"changePercent":0.01473}}}'

        quotes = decode_quotes(body, OCT_11)

        assert len(quotes) == 1
        q = quotes[0]
        assert q.symbol == "CEF"
        assert q.company_name == "Sprott Physical Gold and Silver Trust Units"
        assert q.latest_price == to_float32(11.71)
        assert q.latest_source == Source.REAL_TIME
        assert q.latest_time == datetime(2018, 10, 11, 12, 45, 40, tzinfo=NEW_YORK)
        assert q.latest_update == millis_to_time(1538153140524)
        assert q.latest_update.microsecond == 524000
        assert q.latest_volume == 478088
        assert q.change_percent == to_float32(0.01473)

    def test_delayed_quote(self):
        body = b'{"UUP":{"quote":{"companyName":"Invesco DB USD Index Bullish Fund","latestPrice":25.234,"latestSource":"15 minute delayed price","latestTime":"12:32:11 PM","latestUpdate":1538152331455,"latestVolume":1000000}}}'

        q = decode_quotes(body, OCT_11)[0]

        assert q.latest_source == Source.FIFTEEN_MINUTE_DELAYED
        assert q.latest_time == datetime(2018, 10, 11, 12, 32, 11, tzinfo=NEW_YORK)

    def test_close_quote(self):
        body = b'{"MSFT": {"quote":{"companyName":"Microsoft Corporation","latestPrice":114.37,"latestSource":"Close","latestTime":"September 28, 2018","latestUpdate":1538164800600,"latestVolume":20491683,"change":-0.04,"changePercent":-0.00035}}}'

        q = decode_quotes(body, OCT_11)[0]

        assert q.latest_source == Source.CLOSE
        assert q.latest_time == day(2018, 9, 28)
        assert q.change == to_float32(-0.04)

    def test_symbol_without_quote_is_skipped(self):
        body = b'{"AAPL": {"chart": []}, "SPY": {"quote": {"latestPrice": 1}}}'

        quotes = decode_quotes(body, OCT_11)

        assert [q.symbol for q in quotes] == ["SPY"]
        assert quotes[0].latest_time is None
        assert quotes[0].latest_source == Source.UNSPECIFIED

    def test_unknown_source(self):
        body = b'{"SPY": {"quote": {"latestSource": "Carrier pigeon"}}}'
        with pytest.raises(MalformedResponseError):
            decode_quotes(body, OCT_11)

    def test_bad_json(self):
        with pytest.raises(MalformedResponseError):
            decode_quotes(b'{"SPY": ', OCT_11)

    def test_not_an_object(self):
        with pytest.raises(MalformedResponseError):
            decode_quotes(b'[1, 2, 3]', OCT_11)

    def test_latest_update_out_of_range(self):
        body = b'{"SPY": {"quote": {"latestPrice": 1, "latestUpdate": 100000000000000000000}}}'
        with pytest.raises(MalformedResponseError):
            decode_quotes(body, OCT_11)

    def test_nan_price(self):
        with pytest.raises(MalformedResponseError):
            decode_quotes(b'{"SPY": {"quote": {"latestPrice": NaN}}}', OCT_11)


class TestQuoteDate:
    """Tests for latestTime parsing."""

    @pytest.mark.parametrize("source, latest_time, want", [
        (Source.REAL_TIME, "2:52:11 PM", datetime(2018, 10, 11, 14, 52, 11, tzinfo=NEW_YORK)),
        (Source.FIFTEEN_MINUTE_DELAYED, "12:32:11 PM", datetime(2018, 10, 11, 12, 32, 11, tzinfo=NEW_YORK)),
        (Source.PREVIOUS_CLOSE, "September 25, 2018", day(2018, 9, 25)),
        (Source.CLOSE, "September 25, 2018", day(2018, 9, 25)),
    ])
    def test_quote_date(self, source, latest_time, want):
        assert quote_date(source, latest_time, OCT_11) == want

    def test_empty_time(self):
        assert quote_date(Source.REAL_TIME, "", OCT_11) is None

    def test_wrong_format_for_source(self):
        with pytest.raises(MalformedDateError):
            quote_date(Source.CLOSE, "2:52:11 PM", OCT_11)

    def test_unspecified_source_with_time(self):
        with pytest.raises(MalformedDateError):
            quote_date(Source.UNSPECIFIED, "2:52:11 PM", OCT_11)

    def test_source_table(self):
        assert quote_source("IEX last trade") == Source.LAST_TRADE
        assert quote_source("Last trade") == Source.LAST_TRADE
        assert quote_source("IEX price") == Source.PRICE
        assert quote_source("") == Source.UNSPECIFIED


class TestDecodeCharts:
    """Tests for chart decoding."""

    def test_one_day_chart(self):
        body = b"""{
            "AAPL": {
                "chart": [
                    {"date":"2018-09-18","minute":"15:57","open":218.44,"high":218.49,"low":218.37,"close":218.49,"volume":2607},
                    {"date":"2018-09-18","minute":"15:58","open":218.46,"high":218.5,"low":218.435,"close":218.44,"volume":3680},
                    {"date":"2018-09-18","minute":"15:59","open":218.45,"high":218.49,"low":218.34,"close":218.34,"volume":26153}
                ]
            }
        }"""

        charts = decode_charts(body)

        assert len(charts) == 1
        points = charts[0].points
        assert [p.date for p in points] == [
            datetime(2018, 9, 18, 15, 57, tzinfo=NEW_YORK),
            datetime(2018, 9, 18, 15, 58, tzinfo=NEW_YORK),
            datetime(2018, 9, 18, 15, 59, tzinfo=NEW_YORK),
        ]
        assert points[1].low == to_float32(218.435)
        assert points[2].volume == 26153
        assert points[0].change == 0.0

    def test_daily_chart_is_sorted(self):
        body = b"""{
            "MSFT": {
                "chart": [
                    {"date":"2017-07-07","open":67.3845,"high":68.5026,"low":67.3845,"close":68.1299,"volume":16878317,"change":0.872957,"changePercent":1.298},
                    {"date":"2017-07-05","open":66.948,"high":68.1103,"low":66.9136,"close":67.7572,"volume":21176272,"change":0.892575,"changePercent":1.335},
                    {"date":"2017-07-06","open":66.9627,"high":67.4629,"low":66.8156,"close":67.2569,"volume":21117572,"change":-0.500233,"changePercent":-0.738}
                ]
            }
        }"""

        chart = decode_charts(body)[0]

        assert chart.symbol == "MSFT"
        assert [p.date for p in chart.points] == [day(2017, 7, 5), day(2017, 7, 6), day(2017, 7, 7)]
        assert chart.points[0].change_percent == to_float32(1.335)

    def test_repeated_date_keeps_last_point(self):
        body = b"""{
            "SPY": {
                "chart": [
                    {"date":"2024-01-17","close":1.0},
                    {"date":"2024-01-16","close":2.0},
                    {"date":"2024-01-16","close":3.0}
                ]
            }
        }"""

        chart = decode_charts(body)[0]

        assert [p.date for p in chart.points] == [day(2024, 1, 16), day(2024, 1, 17)]
        assert chart.points[0].close == 3.0

    def test_bad_date(self):
        with pytest.raises(MalformedDateError):
            decode_charts(b'{"SPY": {"chart": [{"date": "07/05/2017"}]}}')

    @pytest.mark.parametrize("volume", ["NaN", "Infinity", "-Infinity", "1e400"])
    def test_non_finite_volume(self, volume):
        body = '{"SPY": {"chart": [{"date": "2024-01-16", "volume": %s}]}}' % volume
        with pytest.raises(MalformedResponseError):
            decode_charts(body)

    def test_chart_date(self):
        assert chart_date("2018-06-28") == day(2018, 6, 28)
        assert chart_date("2018-06-28", "14:53") == datetime(2018, 6, 28, 14, 53, tzinfo=NEW_YORK)

    def test_dump_name(self):
        assert dump_name("chart", ["SPY", "AAPL"], "2y") == "iex-chart-AAPL-SPY-2y.txt"
        assert dump_name("quote", ["SPY"]) == "iex-quote-SPY.txt"


class TestWire:
    """Tests for the MessagePack transport encoding."""

    def test_request_round_trip(self):
        req = GetChartsRequest(token="t", symbols=["SPY", "QQQ"], range=Range.TWO_YEARS, chart_last=3)
        assert decode(encode(req), GetChartsRequest) == req

    def test_response_round_trip(self, sample_chart, sample_quote):
        charts = GetChartsResponse(results=[
            ChartResult(symbol="MSFT", chart=sample_chart),
            ChartResult(symbol="ZZZZ", error=SymbolError(symbol="ZZZZ", message="no data")),
        ])
        quotes = GetQuotesResponse(results=[QuoteResult(symbol="AAPL", quote=sample_quote)])

        got_charts = decode(encode(charts), GetChartsResponse)
        got_quotes = decode(encode(quotes), GetQuotesResponse)

        assert got_charts == charts
        assert got_charts.charts[0].points[0].date.tzinfo == NEW_YORK
        assert got_quotes == quotes

    def test_garbage(self):
        with pytest.raises(WireError):
            decode(b"\xc1\xc1\xc1", GetChartsRequest)

    def test_empty_body(self):
        with pytest.raises(WireError):
            decode(b"", GetChartsRequest)

    def test_not_a_map(self):
        with pytest.raises(WireError):
            decode(msgpack.packb(["SPY"]), GetChartsRequest)

    def test_wrong_field_type(self):
        with pytest.raises(WireError):
            decode(msgpack.packb({"symbols": "SPY", "chart_last": "many"}), GetChartsRequest)
