#!/usr/bin/env python3
"""Tests for ad inventory, exemptions, provider client and the ad engine."""

import json
import random
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

from podcast_hotline import ad_system
from podcast_hotline.ad_system import (
    AdConfig,
    AdDefinition,
    AdEngine,
    AdProviderClient,
    ExemptionList,
    InMemoryAdSessionStore,
    ProviderSettings,
)
from podcast_hotline.exceptions import AdProviderError, ConfigurationError
from podcast_hotline.models import ExemptionEntry

# Add tests directory to path for conftest import
tests_dir = Path(__file__).resolve().parents[2]
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from conftest import (  # noqa: E402
    create_ad_config_data,
    FakeClock,
    HOUR,
    MockHTTPResponse,
    TEST_CHANNEL_ID,
    TEST_CHANNEL_NAME,
    TEST_PHONE,
    TEST_PHONE_KEY,
    TEST_SESSION_ID,
    write_json,
)

PROVIDER_URL = "https://ads.example.net/v1/ads"


class FixedRandom:
    """Stands in for random.Random, returning the given values in turn."""

    def __init__(self, *values):
        self.values = list(values)

    def random(self):
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


def make_ad(ad_id, weight=None, active=True, **extra):
    return AdDefinition(
        id=ad_id,
        name=f"Ad {ad_id}",
        audio_url=f"https://ads.example.com/{ad_id}.mp3",
        weight=weight,
        active=active,
        **extra,
    )


def provider_settings(**overrides):
    data = {
        "enabled": True,
        "apiUrl": PROVIDER_URL,
        "apiKey": "file-key",
        "prerollEnabled": True,
        "midrollEnabled": True,
    }
    data.update(overrides)
    return ProviderSettings.model_validate(data)


class TestInventory(unittest.TestCase):
    """Tests for AdConfig parsing and load_ad_config."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = Path(self.temp_dir.name) / "ad-config.json"

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_load_camel_case_document(self):
        write_json(self.path, create_ad_config_data(preroll=30, midroll=60, interval_minutes=15))
        cfg = ad_system.load_ad_config(self.path)
        self.assertEqual(cfg.frequency.chance("preroll"), 30)
        self.assertEqual(cfg.frequency.chance("midroll"), 60)
        self.assertEqual(cfg.midroll_interval_seconds, 900)
        self.assertEqual(cfg.settings.ad_volume_adjustment, -2.0)
        self.assertEqual(cfg.custom_ads.active("preroll")[0].audio_url, "https://ads.example.com/pre-1.mp3")

    def test_missing_file_yields_empty_inventory(self):
        cfg = ad_system.load_ad_config(self.path)
        self.assertEqual(cfg.custom_ads.active("preroll"), [])
        self.assertEqual(cfg.frequency.chance("preroll"), 0)
        self.assertEqual(cfg.settings.max_ads_per_session, 3)

    def test_invalid_file_yields_empty_inventory(self):
        write_json(self.path, create_ad_config_data(preroll=150))
        self.assertEqual(ad_system.load_ad_config(self.path).providers, {})
        self.path.write_text("{broken", encoding="utf-8")
        self.assertEqual(ad_system.load_ad_config(self.path).providers, {})

    def test_parse_reports_offending_key(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ad_system.parse_ad_config(create_ad_config_data(midroll=-5))
        self.assertEqual(ctx.exception.config_key, "providers.custom.frequency.midroll")
        self.assertIn("percentage", str(ctx.exception))

    def test_ads_are_inactive_unless_flagged(self):
        data = create_ad_config_data(
            preroll_ads=[
                {"id": 1, "name": "No flag", "audioUrl": "https://ads.example.com/1.mp3"},
                {"id": 2, "name": "On", "audioUrl": "https://ads.example.com/2.mp3", "active": True},
            ]
        )
        cfg = AdConfig.model_validate(data)
        active = cfg.custom_ads.active("preroll")
        self.assertEqual([ad.id for ad in active], ["2"])
        self.assertEqual(active[0].effective_weight, 50)

    def test_external_provider_selection(self):
        data = create_ad_config_data(
            providers={
                "disabled": {"enabled": False, "apiUrl": "https://off.example.com"},
                "no_url": {"enabled": True},
                "network": {"enabled": True, "apiUrl": PROVIDER_URL, "prerollEnabled": True},
            }
        )
        name, settings = AdConfig.model_validate(data).external_provider()
        self.assertEqual(name, "network")
        self.assertTrue(settings.enabled_for("preroll"))
        self.assertFalse(settings.enabled_for("midroll"))

    def test_build_provider_client_prefers_explicit_key(self):
        data = create_ad_config_data(
            providers={"network": {"enabled": True, "apiUrl": PROVIDER_URL, "apiKey": "file-key"}}
        )
        cfg = AdConfig.model_validate(data)
        self.assertEqual(ad_system.build_provider_client(cfg, api_key="env-key").api_key, "env-key")
        self.assertEqual(ad_system.build_provider_client(cfg).api_key, "file-key")
        self.assertIsNone(ad_system.build_provider_client(AdConfig()))


class TestExemptionList(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = Path(self.temp_dir.name) / "ad-exempt-numbers.json"
        self.clock = FakeClock()

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_numbers_match_in_any_format(self):
        exemptions = ExemptionList(entries=[ExemptionEntry(number="555-010-2030")])
        self.assertTrue(exemptions.is_exempt(TEST_PHONE))
        self.assertTrue(exemptions.is_exempt("+15550102030"))
        self.assertFalse(exemptions.is_exempt("5550109999"))
        self.assertFalse(exemptions.is_exempt(None))

    def test_add_persists_document(self):
        exemptions = ExemptionList(self.path, clock=self.clock)
        self.assertTrue(exemptions.add(TEST_PHONE, "staff", notes="front desk"))
        self.assertFalse(exemptions.add("5550102030", "duplicate"))

        with open(self.path, encoding="utf-8") as f:
            document = json.load(f)
        self.assertEqual(document["metadata"]["totalExemptions"], 1)
        entry = document["exemptNumbers"][0]
        self.assertEqual(entry["number"], TEST_PHONE)
        self.assertEqual(entry["reason"], "staff")
        self.assertEqual(entry["exemptSince"], "2023-11-14")

        reloaded = ExemptionList(self.path)
        self.assertTrue(reloaded.is_exempt(TEST_PHONE_KEY))
        self.assertEqual(reloaded.entries()[0].notes, "front desk")

    def test_remove(self):
        exemptions = ExemptionList(self.path, clock=self.clock)
        exemptions.add(TEST_PHONE, "staff")
        self.assertTrue(exemptions.remove("+1 555 010 2030"))
        self.assertFalse(exemptions.remove(TEST_PHONE))
        self.assertEqual(len(ExemptionList(self.path)), 0)

    def test_edits_from_two_instances_are_merged(self):
        handler = ExemptionList(self.path, clock=self.clock)
        admin = ExemptionList(self.path, clock=self.clock)
        admin.add("5550000001", "staff")
        handler.add("5550000002", "press")

        self.assertTrue(handler.is_exempt("5550000001"))
        numbers = {entry.number for entry in ExemptionList(self.path).entries()}
        self.assertEqual(numbers, {"5550000001", "5550000002"})


@patch("podcast_hotline.ad_system.downloader.http_post_json")
class TestAdProviderClient(unittest.TestCase):
    def setUp(self):
        self.client = AdProviderClient("network", provider_settings(), api_key="secret", timeout=3)

    def test_request_payload_and_mapping(self, mock_post):
        mock_post.return_value = MockHTTPResponse(
            json_data={
                "ad": {
                    "id": 77,
                    "name": "Car Dealer",
                    "audioUrl": "https://ads.example.net/77.mp3",
                    "duration": 20,
                    "advertiser": "Dealer Inc",
                    "payout": 2.5,
                }
            }
        )
        ad = self.client.request_ad("midroll", TEST_CHANNEL_ID, TEST_CHANNEL_NAME)

        self.assertEqual(ad.id, "77")
        self.assertEqual(ad.sponsor, "Dealer Inc")
        self.assertEqual(ad.revenue, 2.5)
        url, payload = mock_post.call_args.args
        self.assertEqual(url, PROVIDER_URL)
        self.assertEqual(
            payload,
            {
                "adType": "midroll",
                "channelId": TEST_CHANNEL_ID,
                "channelName": TEST_CHANNEL_NAME,
                "targetDemographic": "podcast_listeners",
                "maxDuration": 30,
            },
        )
        self.assertEqual(mock_post.call_args.kwargs["headers"]["Authorization"], "Bearer secret")
        self.assertEqual(mock_post.call_args.kwargs["timeout"], 3)

    def test_empty_response_means_no_ad(self, mock_post):
        mock_post.return_value = MockHTTPResponse(json_data={"ad": None})
        self.assertIsNone(self.client.request_ad("preroll", TEST_CHANNEL_ID))

    def test_transport_error_is_wrapped(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(AdProviderError):
            self.client.request_ad("preroll", TEST_CHANNEL_ID)

    def test_non_json_body_is_wrapped(self, mock_post):
        mock_post.return_value = MockHTTPResponse(content=b"<html>")
        with self.assertRaises(AdProviderError):
            self.client.request_ad("preroll", TEST_CHANNEL_ID)

    def test_malformed_ad_is_wrapped(self, mock_post):
        mock_post.return_value = MockHTTPResponse(json_data={"ad": {"id": 1}})
        with self.assertRaises(AdProviderError):
            self.client.request_ad("preroll", TEST_CHANNEL_ID)

    def test_supports_follows_type_flags(self, mock_post):
        client = AdProviderClient("network", provider_settings(midrollEnabled=False))
        self.assertTrue(client.supports("preroll"))
        self.assertFalse(client.supports("midroll"))


class TestWeightedSelection(unittest.TestCase):
    def test_distribution_follows_weights(self):
        heavy, light = make_ad("heavy", weight=90), make_ad("light", weight=10)
        rng = random.Random(42)
        picks = [ad_system.select_weighted_ad([heavy, light], rng).id for _ in range(10000)]
        self.assertTrue(8800 <= picks.count("heavy") <= 9200)

    def test_boundary_draw_selects_earlier_ad(self):
        ads = [make_ad("a", weight=50), make_ad("b", weight=50)]
        self.assertEqual(ad_system.select_weighted_ad(ads, FixedRandom(0.5)).id, "a")

    def test_draw_past_end_selects_first_ad(self):
        ads = [make_ad("a"), make_ad("b")]
        self.assertEqual(ad_system.select_weighted_ad(ads, FixedRandom(1.5)).id, "a")

    def test_empty_pool(self):
        self.assertIsNone(ad_system.select_weighted_ad([], random.Random(1)))


class AdEngineTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()

    def make_engine(self, provider=None, exemptions=None, rng=None, **config_overrides):
        cfg = AdConfig.model_validate(create_ad_config_data(**config_overrides))
        return AdEngine(
            cfg,
            exemptions=exemptions,
            provider=provider,
            rng=rng or random.Random(7),
            clock=self.clock,
        )


class TestAdEngineGates(AdEngineTestCase):
    def test_init_session_reports_ads_enabled(self):
        engine = self.make_engine()
        self.assertTrue(engine.init_session(TEST_SESSION_ID, TEST_PHONE))

    def test_exempt_caller_never_gets_ads(self):
        exemptions = ExemptionList(entries=[ExemptionEntry(number=TEST_PHONE_KEY)])
        engine = self.make_engine(exemptions=exemptions)
        self.assertFalse(engine.init_session(TEST_SESSION_ID, TEST_PHONE))

        outcome = engine.get_preroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID)
        self.assertEqual(outcome.reason, "caller is exempt from ads")
        self.assertIsNone(engine.get_midroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID))

    def test_unknown_session(self):
        engine = self.make_engine()
        outcome = engine.get_preroll_ad_outcome("nope", TEST_CHANNEL_ID)
        self.assertEqual(outcome.reason, "no active ad session")
        self.assertIsNone(outcome.value)

    def test_preroll_served_from_custom_pool(self):
        engine = self.make_engine()
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        ad = engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID)

        self.assertEqual(ad.id, "pre-1")
        self.assertEqual(ad.type, "preroll")
        self.assertEqual(ad.duration, 15)
        self.assertEqual(ad.skip_after, 5)
        self.assertEqual(ad.volume_adjustment, -2.0)
        self.assertEqual(engine.get_session_ad_stats(TEST_SESSION_ID).total_ads_played, 1)

    def test_zero_frequency_skips(self):
        engine = self.make_engine(preroll=0, midroll=0)
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        self.assertEqual(
            engine.get_preroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID).reason,
            "frequency trial skipped preroll",
        )
        self.assertEqual(
            engine.get_midroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID).reason,
            "frequency trial skipped midroll",
        )

    def test_frequency_trial_is_independent_per_request(self):
        engine = self.make_engine(preroll=50, rng=FixedRandom(0.9, 0.2, 0.0))
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        self.assertIsNone(engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID))
        self.assertIsNotNone(engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID))

    def test_midroll_interval_gate(self):
        engine = self.make_engine(interval_minutes=10, max_ads=10)
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)

        self.assertIsNotNone(engine.get_midroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID, 600))
        self.clock.advance(5 * 60)
        outcome = engine.get_midroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID, 900)
        self.assertEqual(outcome.reason, "midroll interval not reached")
        self.clock.advance(5 * 60)
        self.assertIsNotNone(engine.get_midroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID, 1200))

    def test_preroll_does_not_start_midroll_interval(self):
        engine = self.make_engine(max_ads=10)
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID)
        self.assertIsNotNone(engine.get_midroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID))

    def test_max_ads_per_session(self):
        engine = self.make_engine(max_ads=2, interval_minutes=1)
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID)
        engine.get_midroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID)
        self.clock.advance(HOUR)
        outcome = engine.get_midroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID)
        self.assertEqual(outcome.reason, "max ads per session reached")

    def test_empty_pool_without_provider(self):
        engine = self.make_engine(preroll_ads=[])
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        outcome = engine.get_preroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID)
        self.assertEqual(outcome.reason, "no preroll ad available")


class TestAdEngineProvider(AdEngineTestCase):
    def make_provider(self):
        provider = MagicMock(spec=AdProviderClient)
        provider.supports.return_value = True
        provider.request_ad.return_value = make_ad("net-1", revenue=3.0, sponsor="Network")
        return provider

    def test_provider_used_when_custom_pool_empty(self):
        provider = self.make_provider()
        engine = self.make_engine(provider=provider, midroll_ads=[])
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)

        ad = engine.get_midroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID, channel_name=TEST_CHANNEL_NAME)

        self.assertEqual(ad.id, "net-1")
        self.assertEqual(ad.duration, 30)
        provider.request_ad.assert_called_once_with("midroll", TEST_CHANNEL_ID, TEST_CHANNEL_NAME)

    def test_custom_pool_wins_over_provider(self):
        provider = self.make_provider()
        engine = self.make_engine(provider=provider)
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        self.assertEqual(engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID).id, "pre-1")
        provider.request_ad.assert_not_called()

    def test_provider_failure_means_no_ad(self):
        provider = self.make_provider()
        provider.request_ad.side_effect = AdProviderError("down", provider="network")
        engine = self.make_engine(provider=provider, preroll_ads=[])
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        outcome = engine.get_preroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID)
        self.assertEqual(outcome.reason, "no preroll ad available")

    def test_unsupported_type_skips_provider(self):
        provider = self.make_provider()
        provider.supports.return_value = False
        engine = self.make_engine(provider=provider, preroll_ads=[])
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        self.assertIsNone(engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID))
        provider.request_ad.assert_not_called()

    def test_session_ending_during_selection(self):
        provider = self.make_provider()
        engine = self.make_engine(provider=provider, preroll_ads=[])

        def hang_up(*args):
            engine.end_session(TEST_SESSION_ID)
            return make_ad("late")

        provider.request_ad.side_effect = hang_up
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        outcome = engine.get_preroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID)
        self.assertEqual(outcome.reason, "session ended during ad selection")

    def test_max_ads_rechecked_after_selection(self):
        provider = self.make_provider()
        engine = self.make_engine(provider=provider, midroll_ads=[], max_ads=1)

        def preroll_meanwhile(*args):
            engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID)
            return make_ad("late")

        provider.request_ad.side_effect = preroll_meanwhile
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        outcome = engine.get_midroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID)

        self.assertEqual(outcome.reason, "max ads per session reached")
        stats = engine.get_session_ad_stats(TEST_SESSION_ID)
        self.assertEqual(stats.total_ads_played, 1)
        self.assertEqual([event.id for event in stats.ads_played], ["pre-1"])

    def test_overlapping_midrolls_play_once(self):
        provider = self.make_provider()
        engine = self.make_engine(provider=provider, midroll_ads=[], max_ads=10)
        nested = []

        def midroll_meanwhile(*args):
            if not nested:
                nested.append(engine.get_midroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID))
            return make_ad("net-1")

        provider.request_ad.side_effect = midroll_meanwhile
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        outcome = engine.get_midroll_ad_outcome(TEST_SESSION_ID, TEST_CHANNEL_ID)

        self.assertTrue(nested[0].ok)
        self.assertEqual(outcome.reason, "midroll interval not reached")
        self.assertEqual(engine.get_session_ad_stats(TEST_SESSION_ID).total_ads_played, 1)


class TestAdEngineAccounting(AdEngineTestCase):
    def test_track_ad_played(self):
        engine = self.make_engine()
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID)
        self.clock.advance(15)

        self.assertTrue(engine.track_ad_played(TEST_SESSION_ID, "pre-1", 6, skipped=True))
        self.assertTrue(engine.track_ad_played(TEST_SESSION_ID, "pre-1", 15))

        event = engine.get_session_ad_stats(TEST_SESSION_ID).ads_played[0]
        self.assertEqual(event.playback_duration, 15)
        self.assertFalse(event.skipped)
        self.assertEqual(event.completed_at, self.clock())

        self.assertFalse(engine.track_ad_played(TEST_SESSION_ID, "unknown", 1))
        self.assertFalse(engine.track_ad_played("other", "pre-1", 1))

    def test_end_session_summary(self):
        engine = self.make_engine(interval_minutes=0)
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        engine.get_preroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID)
        engine.get_midroll_ad(TEST_SESSION_ID, TEST_CHANNEL_ID)
        self.clock.advance(120)

        summary = engine.end_session(TEST_SESSION_ID)

        self.assertEqual(summary.phone_number, TEST_PHONE_KEY)
        self.assertEqual(summary.total_ads_played, 2)
        self.assertAlmostEqual(summary.total_revenue, 1.75)
        self.assertEqual(summary.duration_seconds, 120)
        self.assertEqual([e.type for e in summary.ads_played], ["preroll", "midroll"])
        self.assertIsNone(engine.end_session(TEST_SESSION_ID))
        self.assertIsNone(engine.get_session_ad_stats(TEST_SESSION_ID))

    def test_reap_idle_sessions(self):
        engine = self.make_engine()
        engine.init_session("idle", TEST_PHONE)
        self.clock.advance(3 * HOUR)
        engine.init_session("busy", "5550109999")
        self.clock.advance(2 * HOUR)

        reaped = engine.reap_idle_sessions(4 * HOUR)

        self.assertEqual([s.session_id for s in reaped], ["idle"])
        self.assertIsNotNone(engine.get_session_ad_stats("busy"))

    def test_system_stats(self):
        exemptions = ExemptionList(entries=[ExemptionEntry(number="5550109999")])
        engine = self.make_engine(
            exemptions=exemptions,
            providers={"network": {"enabled": True, "apiUrl": PROVIDER_URL}},
        )
        engine.init_session(TEST_SESSION_ID, TEST_PHONE)
        self.assertEqual(
            engine.get_system_stats(),
            {
                "active_sessions": 1,
                "total_exemptions": 1,
                "custom_ads_active": {"preroll": 1, "midroll": 1},
                "providers_enabled": 1,
            },
        )


class TestInMemoryAdSessionStore(unittest.TestCase):
    def test_sessions_spread_across_stripes(self):
        store = InMemoryAdSessionStore(stripes=4)
        for i in range(20):
            store.upsert(f"call-{i}", MagicMock())
        self.assertEqual(len(store), 20)
        self.assertIsNotNone(store.delete("call-3"))
        self.assertIsNone(store.get("call-3"))
        self.assertEqual(len(store.items()), 19)

    def test_lock_is_reentrant(self):
        store = InMemoryAdSessionStore()
        with store.lock_for("a"):
            with store.lock_for("a"):
                store.upsert("a", MagicMock())
        self.assertIsNotNone(store.get("a"))


if __name__ == "__main__":
    unittest.main()
