"""
ER Wait Time Agent - Generative Prediction Path Tests

The Groq client is replaced with MagicMock/AsyncMock; no network access.
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from agents.er_wait_time.ai_fallback import (
    SYSTEM_PROMPT,
    AIFallbackAdapter,
    build_prediction_prompt,
    parse_ai_prediction,
)
from agents.er_wait_time.models import Provenance
from agents.er_wait_time.prediction_engine import PredictionEngine

from conftest import FIXED_NOW, make_signal


VALID_REPLY = {
    "predictedWaitTime": 47,
    "confidenceScore": 0.88,
    "factors": {
        "baseWaitTime": 60,
        "timeOfDayFactor": 1.0,
        "seasonFactor": 1.0,
        "dayOfWeekFactor": 1.0,
        "trafficFactor": 1.05,
        "weatherFactor": 1.0,
        "otherFactors": ["Light traffic"],
    },
}


def completion(content):
    """Shape of a chat completion: choices[0].message.content."""
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]
    return response


def groq_client(content=None, side_effect=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=completion(content), side_effect=side_effect
    )
    client.close = AsyncMock()
    return client


@pytest.fixture
def ai_settings(test_settings):
    return test_settings.model_copy(update={"ai_enabled": True, "groq_api_key": "test-key"})


class TestParse:
    """Result-style parsing never raises."""

    def test_valid_reply(self):
        outcome = parse_ai_prediction(json.dumps(VALID_REPLY))

        assert outcome.ok
        assert outcome.payload.predicted_wait_time == 47
        assert outcome.payload.factors.traffic_factor == 1.05
        assert outcome.payload.factors.other_factors == ["Light traffic"]

    def test_fenced_reply(self):
        outcome = parse_ai_prediction("```json\n" + json.dumps(VALID_REPLY) + "\n```")
        assert outcome.ok

    @pytest.mark.parametrize("content,reason", [
        (None, "empty"),
        ("   ", "empty"),
        ("The wait is about 45 minutes.", "not JSON"),
        ("[1, 2, 3]", "not an object"),
        ('{"predictedWaitTime": 40}', "schema mismatch"),
        ('{"predictedWaitTime": "soon", "confidenceScore": 0.9, "factors": {}}', "schema mismatch"),
    ])
    def test_failures_carry_a_reason(self, content, reason):
        outcome = parse_ai_prediction(content)

        assert not outcome.ok
        assert reason in outcome.error

    def test_negative_factor_is_schema_mismatch(self):
        reply = json.loads(json.dumps(VALID_REPLY))
        reply["factors"]["weatherFactor"] = -1
        assert not parse_ai_prediction(json.dumps(reply)).ok


class TestPrompt:

    def test_prompt_carries_inputs(self, profile, neutral_signal):
        prompt = build_prediction_prompt(profile, "High", neutral_signal, FIXED_NOW, 4.2)

        assert "Mercy General" in prompt
        assert "High urgency: 60" in prompt
        assert "Distance from patient: 4.2 km" in prompt
        assert "Weather: Clear" in prompt
        assert "predictedWaitTime" in prompt


class TestAdapter:
    """Any AI failure defers to the factor model."""

    def run_predict(self, adapter, profile, signal):
        return asyncio.run(adapter.predict(profile, "High", signal, FIXED_NOW, 2.0))

    def test_disabled_uses_formula(self, test_settings, profile, neutral_signal):
        adapter = AIFallbackAdapter(PredictionEngine(), test_settings)

        result = self.run_predict(adapter, profile, neutral_signal)

        assert not adapter.enabled
        assert result.provenance == Provenance.FORMULA
        assert result.predicted_wait_time == 60

    def test_valid_reply_is_tagged_ai_and_normalised(self, ai_settings, profile, neutral_signal):
        client = groq_client(json.dumps(VALID_REPLY))
        adapter = AIFallbackAdapter(PredictionEngine(), ai_settings, client=client)

        result = self.run_predict(adapter, profile, neutral_signal)

        assert result.provenance == Provenance.AI
        assert result.predicted_wait_time == 45
        assert result.confidence_score == pytest.approx(0.88)
        assert result.factors.traffic_factor == 1.05
        assert result.factors.other_factors == ["Light traffic (+5%)", "Light traffic"]

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == ai_settings.groq_model
        assert kwargs["temperature"] == 0.3
        assert kwargs["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}

    def test_moved_factors_are_explained_even_without_model_notes(self, ai_settings, profile):
        reply = dict(VALID_REPLY, factors=dict(
            VALID_REPLY["factors"],
            dayOfWeekFactor=1.22, trafficFactor=1.18, weatherFactor=1.28, otherFactors=[],
        ))
        adapter = AIFallbackAdapter(PredictionEngine(), ai_settings,
                                    client=groq_client(json.dumps(reply)))
        signal = make_signal(day_of_week="Saturday", is_weekend=True,
                             traffic="Heavy", weather="Stormy")

        result = self.run_predict(adapter, profile, signal)

        assert result.provenance == Provenance.AI
        assert result.factors.other_factors == [
            "Weekend volume (+22%)", "Heavy traffic (+18%)", "Stormy weather (+28%)",
        ]

    def test_model_notes_are_not_duplicated(self, ai_settings, profile):
        reply = dict(VALID_REPLY, factors=dict(
            VALID_REPLY["factors"],
            trafficFactor=1.18, otherFactors=["Heavy traffic (+18%)", "School holidays"],
        ))
        adapter = AIFallbackAdapter(PredictionEngine(), ai_settings,
                                    client=groq_client(json.dumps(reply)))

        result = self.run_predict(adapter, profile, make_signal(traffic="Heavy"))

        assert result.factors.other_factors == ["Heavy traffic (+18%)", "School holidays"]

    def test_out_of_range_reply_is_clamped(self, ai_settings, profile, neutral_signal):
        reply = dict(VALID_REPLY, predictedWaitTime=900, confidenceScore=1.4)
        adapter = AIFallbackAdapter(PredictionEngine(), ai_settings,
                                    client=groq_client(json.dumps(reply)))

        result = self.run_predict(adapter, profile, neutral_signal)

        assert result.predicted_wait_time == 240
        assert result.confidence_score == 0.95

    @pytest.mark.parametrize("content", ["not json at all", '{"predictedWaitTime": 30}', ""])
    def test_bad_reply_falls_back(self, ai_settings, profile, neutral_signal, content, caplog):
        adapter = AIFallbackAdapter(PredictionEngine(), ai_settings, client=groq_client(content))

        with caplog.at_level(logging.WARNING):
            result = self.run_predict(adapter, profile, neutral_signal)

        assert result.provenance == Provenance.FORMULA
        assert result.predicted_wait_time == 60
        assert "using formula" in caplog.text

    @pytest.mark.parametrize("error", [
        ConnectionError("network down"), asyncio.TimeoutError(), RuntimeError("sdk error"),
    ])
    def test_client_errors_fall_back(self, ai_settings, profile, neutral_signal, error):
        adapter = AIFallbackAdapter(PredictionEngine(), ai_settings,
                                    client=groq_client(side_effect=error))

        result = self.run_predict(adapter, profile, neutral_signal)

        assert result.provenance == Provenance.FORMULA

    def test_fallback_matches_engine(self, ai_settings, profile, neutral_signal):
        engine = PredictionEngine()
        adapter = AIFallbackAdapter(engine, ai_settings, client=groq_client("garbage"))

        result = self.run_predict(adapter, profile, neutral_signal)
        expected = engine.predict(profile, "High", neutral_signal, FIXED_NOW, 2.0)

        assert result.to_dict() == expected.to_dict()

    def test_enabled_without_key_is_disabled(self, test_settings, caplog):
        settings = test_settings.model_copy(update={"ai_enabled": True, "groq_api_key": None})

        with caplog.at_level(logging.WARNING):
            adapter = AIFallbackAdapter(PredictionEngine(), settings)

        assert not adapter.enabled
        assert "GROQ_API_KEY" in caplog.text
