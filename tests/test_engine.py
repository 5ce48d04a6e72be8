"""End-to-end tests for the pipeline facade."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from quantfusion.cli import app
from quantfusion.core.cache import sentiment_history_key
from quantfusion.core.config import LLMConfig, QuantFusionConfig, SystemConfig
from quantfusion.core.engine import QuantFusionEngine
from quantfusion.core.exceptions import SymbolNotFoundError
from quantfusion.layers.data_providers import InMemoryMarketData, Instrument, InstrumentRegistry
from quantfusion.storage.analysis_store import InMemoryAnalysisStore

from tests.conftest import SYMBOL, FakeReasoner, as_response, valid_payload


def engine_payload() -> dict:
    # Uptrend fixture closes near 181
    return valid_payload(
        price_targets={"near_term": 200.0, "medium_term": 210.0, "long_term": 230.0, "stop_loss": 170.0},
        key_levels={"resistance": [200.0, 210.0], "support": [175.0, 170.0]},
    )


@pytest.fixture
def config(tmp_path) -> QuantFusionConfig:
    return QuantFusionConfig(
        llm=LLMConfig(llm_provider="groq", groq_api_key=""),
        system=SystemConfig(analysis_store_path=str(tmp_path / "analyses.jsonl")),
    )


@pytest.fixture
def make_engine(config, uptrend_bars, news_source, social_source, analyst_source, no_sleep):
    def factory(reasoner=None, store=None) -> QuantFusionEngine:
        return QuantFusionEngine(
            config=config,
            market_data=InMemoryMarketData({SYMBOL: uptrend_bars}),
            registry=InstrumentRegistry([Instrument(SYMBOL)]),
            news_source=news_source,
            social_source=social_source,
            analyst_source=analyst_source,
            reasoner=reasoner,
            store=store if store is not None else InMemoryAnalysisStore(),
            sleep=no_sleep,
        )
    return factory


class TestQuantFusionEngine:
    @pytest.mark.asyncio
    async def test_analyze_with_reasoner(self, make_engine, uptrend_bars):
        reasoner = FakeReasoner([as_response(engine_payload())])
        store = InMemoryAnalysisStore()
        engine = make_engine(reasoner=reasoner, store=store)

        analysis = await engine.analyze(SYMBOL, user_id=3)

        assert not analysis.is_fallback
        assert analysis.recommendation == "BUY"
        assert analysis.user_id == 3
        assert store.latest(SYMBOL) is analysis
        # Price refreshed from the newest bar before prompting
        assert engine.registry.current_price(SYMBOL) == pytest.approx(uptrend_bars[-1].close)
        assert len(engine.cache.get(sentiment_history_key(SYMBOL))) == 1

    @pytest.mark.asyncio
    async def test_analyze_without_reasoner_falls_back(self, make_engine):
        engine = make_engine()
        assert engine.reasoner is None

        analysis = await engine.analyze(SYMBOL)

        assert analysis.is_fallback
        assert analysis.recommendation in ("BUY", "SELL", "HOLD")
        assert engine.metrics.count("llm.fallbacks") == 1

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, make_engine):
        engine = make_engine()
        with pytest.raises(SymbolNotFoundError):
            await engine.analyze("NOPE")
        with pytest.raises(SymbolNotFoundError):
            await engine.fusion("NOPE")

    @pytest.mark.asyncio
    async def test_component_entry_points(self, make_engine):
        engine = make_engine()

        indicators = await engine.indicators(SYMBOL, period=100)
        assert indicators.status == "ok"
        assert indicators.bars == 100

        sentiment = await engine.sentiment(SYMBOL)
        assert sentiment.overall_score > 0

        regime = await engine.regime(SYMBOL)
        assert regime.regime == "bull"

        fusion = await engine.fusion(SYMBOL)
        assert fusion.fusion_score > 0
        assert fusion is await engine.fusion(SYMBOL)

    @pytest.mark.asyncio
    async def test_batch(self, make_engine):
        engine = make_engine(reasoner=FakeReasoner([as_response(engine_payload())]))
        results = await engine.analyze_batch([SYMBOL, "NOPE"])

        assert results["summary"] == {"total": 2, "successful": 1, "failed": 1}
        assert "NOPE" in results["failed"]
        assert len(engine.cache.get(sentiment_history_key(SYMBOL))) == 1
        assert engine.cache.get(sentiment_history_key("NOPE")) is None

    @pytest.mark.asyncio
    async def test_status_and_close(self, make_engine):
        reasoner = FakeReasoner([as_response(engine_payload())])
        engine = make_engine(reasoner=reasoner)
        await engine.analyze(SYMBOL)

        status = engine.get_status()
        assert status["symbols"] == [SYMBOL]
        assert status["reasoner"] == "fake"
        assert status["metrics"]["counters"]["cache.fusion_analysis.miss"] == 1

        await engine.close()
        assert reasoner.closed


class TestCli:
    def test_version(self):
        result = CliRunner().invoke(app, ["version"])
        assert result.exit_code == 0
        assert "QuantFusion v" in result.output

    def test_status_without_bar_files(self, tmp_path):
        result = CliRunner().invoke(app, ["status", "--data-dir", str(tmp_path)])
        assert result.exit_code == 0
        assert "No bar files found" in result.output
