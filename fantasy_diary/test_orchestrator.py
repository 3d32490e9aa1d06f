import asyncio
import datetime as dt
import json
import unittest
import urllib.error
from unittest.mock import patch

from fantasy_diary import external_tools, orchestrator, persistence
from fantasy_diary.config import CHARACTERS_TABLE, EPISODES_TABLE, PLACES_TABLE
from fantasy_diary.errors import PhaseTransitionError, TextGenerationError, ToolCallError
from fantasy_diary.gateway import ToolGateway
from fantasy_diary.mcp_client import CombinedToolClient, GatewayToolClient
from fantasy_diary.orchestrator import ChapterOrchestrator, Phase, generate_chapter, new_job_context, next_phase, persist_job
from fantasy_diary.test_doubles import FakeDynamoDB, ScriptedGenerator
from fantasy_diary.tools import build_read_registry, build_write_registry

_REQUEST = {"currentTime": "2025-03-01T18:30:00+09:00"}
_EPISODE_ID = "2025-03-01T09:30:00.000Z"


def _fenced(payload):
    return "```json\n" + json.dumps(payload, ensure_ascii=False) + "\n```"


_DRAFT = "비가 그친 새벽, 이준은 한강 다리 난간에 기대어 숨을 골랐다. 멀리서 사이렌이 울렸다."
_REVISED = "비가 그친 새벽, 이준은 한강 다리 난간에 기대어 숨을 골랐다. 민서가 서울역 쪽을 가리켰다."

_HAPPY_OUTPUTS = {
    "planning": _fenced({"previousStory": "두 생존자가 마포를 빠져나왔다.", "keyCharacters": ["이준"], "keyPlaces": ["한강 다리"]}),
    "prewriting": _fenced({"outline": "다리를 건너 서울역으로", "mentionedCharacters": ["이준", "민서"], "mentionedPlaces": ["서울역"]}),
    "drafting": _DRAFT,
    "revision": _REVISED + "\n\n" + _fenced({"mentionedCharacters": ["이준", "민서"], "mentionedPlaces": ["한강 다리"]}),
    "finalize": _fenced(
        {
            "newCharacters": [
                {
                    "name": "민서",
                    "personality": "대담함",
                    "background": "간호사",
                    "appearance": "붉은 배낭",
                    "current_place": "한강 다리",
                    "relationships": {"이준": "동료"},
                    "major_events": [],
                    "character_traits": ["응급처치"],
                    "current_status": "건강",
                }
            ],
            "updatedCharacters": [{"name": "이준", "current_status": "탈진"}],
            "newPlaces": [{"name": "서울역", "current_situation": "봉쇄됨", "latitude": 37.5547, "longitude": 126.9706}],
            "updatedPlaces": [],
        }
    ),
}


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        self.ddb = FakeDynamoDB({EPISODES_TABLE: "id", CHARACTERS_TABLE: "name", PLACES_TABLE: "name"})
        patcher = patch.object(persistence, "_get_ddb", return_value=self.ddb)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.reader = GatewayToolClient(ToolGateway(build_read_registry()))
        self.writer = GatewayToolClient(ToolGateway(build_write_registry()))
        self._seed()

    def _seed(self):
        persistence._create_record(
            persistence.EPISODES,
            {"id": "2025-02-28T09:30:00.000Z", "content": "마포를 탈출했다.", "summary": "마포 탈출", "characters": ["이준"], "places": []},
        )
        persistence._create_record(
            persistence.EPISODES,
            {"id": "2025-02-27T09:30:00.000Z", "content": "첫 감염자.", "summary": "첫 감염", "characters": [], "places": []},
        )
        persistence._create_record(
            persistence.CHARACTERS,
            {
                "name": "이준",
                "personality": "침착함",
                "background": "전직 소방관",
                "appearance": "그을린 점퍼",
                "current_place": "마포",
                "relationships": {},
                "major_events": ["마포 탈출"],
                "character_traits": ["리더십"],
                "current_status": "건강",
                "last_mentioned_episode_id": "2025-02-28T09:30:00.000Z",
            },
        )
        persistence._create_record(
            persistence.PLACES,
            {"name": "한강 다리", "current_situation": "차량으로 막힘", "latitude": 37.5283, "longitude": 126.9326},
        )

    def _run(self, outputs):
        generator = ScriptedGenerator(outputs)
        result = asyncio.run(generate_chapter(_REQUEST, reader=self.reader, writer=self.writer, generator=generator))
        return result, generator


class PhaseMachineTests(unittest.TestCase):
    def test_next_phase_is_strictly_forward(self):
        order = [Phase.PLANNING]
        while order[-1] is not Phase.DONE:
            order.append(next_phase(order[-1]))
        self.assertEqual(
            [p.value for p in order],
            ["planning", "prewriting", "drafting", "revision", "finalize", "done"],
        )
        with self.assertRaises(PhaseTransitionError):
            next_phase(Phase.DONE)
        with self.assertRaises(PhaseTransitionError):
            next_phase(Phase.FAILED)

    def test_step_rejects_out_of_order_phase(self):
        ctx = new_job_context(dt.datetime(2025, 3, 1, 9, 30, tzinfo=dt.timezone.utc))
        machine = ChapterOrchestrator(reader=None, generator=ScriptedGenerator({}))
        with self.assertRaises(PhaseTransitionError):
            asyncio.run(machine.step(Phase.DRAFTING, ctx))
        ctx.phase = Phase.DONE
        with self.assertRaises(PhaseTransitionError):
            asyncio.run(machine.step(Phase.DONE, ctx))

    def test_job_id_is_utc_with_milliseconds(self):
        ctx = new_job_context(dt.datetime(2025, 3, 1, 18, 30, 5, 123456, tzinfo=dt.timezone(dt.timedelta(hours=9))))
        self.assertEqual(ctx.id, "2025-03-01T09:30:05.123Z")
        naive = new_job_context(dt.datetime(2025, 3, 1, 9, 30))
        self.assertEqual(naive.id, "2025-03-01T09:30:00.000Z")


class GenerateChapterTests(OrchestratorTestCase):
    def test_full_run_persists_episode_and_entities(self):
        result, generator = self._run(_HAPPY_OUTPUTS)

        self.assertTrue(result.ok, result.error)
        self.assertEqual(result.chapter_id, _EPISODE_ID)
        self.assertEqual(result.phase_history, ["planning", "prewriting", "drafting", "revision", "finalize"])
        self.assertFalse(result.fallback_used)
        self.assertEqual(result.content, _REVISED)

        episodes = self.ddb.records(EPISODES_TABLE)
        stored = episodes[_EPISODE_ID]
        self.assertEqual(stored["content"], _REVISED)
        self.assertEqual(stored["summary"], _REVISED[:280])
        self.assertEqual(sorted(stored["characters"]), ["민서", "이준"])
        self.assertEqual(sorted(stored["places"]), ["서울역", "한강 다리"])

        characters = self.ddb.records(CHARACTERS_TABLE)
        self.assertEqual(characters["이준"]["current_status"], "탈진")
        self.assertEqual(characters["이준"]["background"], "전직 소방관")
        self.assertEqual(characters["민서"]["last_mentioned_episode_id"], _EPISODE_ID)
        places = self.ddb.records(PLACES_TABLE)
        self.assertEqual(places["서울역"]["current_situation"], "봉쇄됨")
        self.assertEqual(places["한강 다리"]["last_mentioned_episode_id"], _EPISODE_ID)

        self.assertEqual(result.stats["characters_added"], 1)
        self.assertEqual(result.stats["characters_updated"], 1)
        self.assertEqual(result.stats["places_added"], 1)
        self.assertEqual(result.stats["places_updated"], 1)

        # Prewriting and drafting are offered tools; planning is not.
        self.assertIsNone(generator.tool_lists[0])
        self.assertIn("characters.get", [t["name"] for t in generator.tool_lists[1]])
        self.assertIn("characters.get", [t["name"] for t in generator.tool_lists[2]])
        self.assertIsNone(generator.tool_lists[3])

        payload = result.to_dict()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["chapterId"], _EPISODE_ID)
        self.assertEqual(payload["stats"]["charactersAdded"], 1)

    def test_drafting_failure_uses_fallback_chapter(self):
        outputs = {"drafting": TextGenerationError("Anthropic request failed (http_529)")}
        result, _ = self._run(outputs)

        self.assertTrue(result.ok, result.error)
        self.assertTrue(result.fallback_used)
        self.assertEqual(result.upstream_error, "Anthropic request failed (http_529)")
        self.assertIn("(백업 생성)", result.content)
        self.assertIn("이준", result.content)
        self.assertIn(_EPISODE_ID, self.ddb.records(EPISODES_TABLE))
        self.assertEqual(self.ddb.records(CHARACTERS_TABLE)["이준"]["last_mentioned_episode_id"], _EPISODE_ID)
        self.assertEqual(result.to_dict()["upstreamError"], "Anthropic request failed (http_529)")

    def test_empty_draft_uses_fallback_chapter(self):
        outputs = dict(_HAPPY_OUTPUTS, drafting="   ")
        result, _ = self._run(outputs)
        self.assertTrue(result.fallback_used)
        self.assertEqual(result.upstream_error, "empty completion")

    def test_planning_without_model_summarises_locally(self):
        ctx = new_job_context(dt.datetime(2025, 3, 1, 9, 30, tzinfo=dt.timezone.utc))
        machine = ChapterOrchestrator(reader=self.reader, generator=ScriptedGenerator({"planning": RuntimeError("down")}))
        asyncio.run(machine.step(Phase.PLANNING, ctx))
        self.assertEqual(ctx.previous_story, "첫 감염 마포 탈출")
        self.assertEqual(ctx.phase, Phase.PREWRITING)
        self.assertEqual(len(ctx.recent_episodes), 2)

    def test_unknown_reference_is_skipped(self):
        outputs = dict(_HAPPY_OUTPUTS)
        outputs["planning"] = _fenced({"previousStory": "x", "keyCharacters": ["유령"], "keyPlaces": []})
        ctx = new_job_context(dt.datetime(2025, 3, 1, 9, 30, tzinfo=dt.timezone.utc))
        machine = ChapterOrchestrator(reader=self.reader, generator=ScriptedGenerator(outputs))
        asyncio.run(machine.step(Phase.PLANNING, ctx))
        self.assertEqual(ctx.references["characters"], [])

    def test_store_failure_is_reported_not_raised(self):
        class BrokenWriter:
            async def call(self, name, arguments=None):
                raise ToolCallError(-32002, "ProvisionedThroughputExceededException: slow down")

        generator = ScriptedGenerator(_HAPPY_OUTPUTS)
        result = asyncio.run(generate_chapter(_REQUEST, reader=self.reader, writer=BrokenWriter(), generator=generator))
        self.assertFalse(result.ok)
        self.assertIn("ProvisionedThroughputExceededException", result.error)
        self.assertEqual(result.chapter_id, _EPISODE_ID)
        self.assertFalse(result.to_dict()["success"])

    def test_bad_current_time_is_reported(self):
        result = asyncio.run(
            generate_chapter({"currentTime": "어제"}, reader=self.reader, writer=self.writer, generator=ScriptedGenerator({}))
        )
        self.assertFalse(result.ok)
        self.assertIsNone(result.chapter_id)

    def test_current_time_defaults_to_clock(self):
        result = asyncio.run(
            generate_chapter(
                {},
                reader=self.reader,
                writer=self.writer,
                generator=ScriptedGenerator(_HAPPY_OUTPUTS),
                clock=lambda: 1740821400.0,
            )
        )
        self.assertTrue(result.ok, result.error)
        self.assertEqual(result.chapter_id, _EPISODE_ID)


class FinalizeMergeTests(OrchestratorTestCase):
    def test_partial_proposal_for_stored_character_keeps_other_fields(self):
        outputs = dict(
            _HAPPY_OUTPUTS,
            finalize=_fenced({"newCharacters": [{"name": "이준", "current_status": "부상", "personality": "", "major_events": []}]}),
        )
        result, _ = self._run(outputs)

        self.assertTrue(result.ok, result.error)
        stored = self.ddb.records(CHARACTERS_TABLE)["이준"]
        self.assertEqual(stored["current_status"], "부상")
        self.assertEqual(stored["personality"], "침착함")
        self.assertEqual(stored["background"], "전직 소방관")
        self.assertEqual(stored["major_events"], ["마포 탈출"])
        self.assertEqual(stored["last_mentioned_episode_id"], _EPISODE_ID)
        self.assertEqual(result.stats["characters_added"], 0)
        self.assertEqual(result.stats["characters_updated"], 1)

    def test_out_of_range_coordinates_never_replace_stored_ones(self):
        outputs = dict(
            _HAPPY_OUTPUTS,
            finalize=_fenced({"updatedPlaces": [{"name": "한강 다리", "latitude": 500, "current_situation": "무너짐"}]}),
        )
        result, _ = self._run(outputs)

        self.assertTrue(result.ok, result.error)
        stored = self.ddb.records(PLACES_TABLE)["한강 다리"]
        self.assertEqual(stored["current_situation"], "무너짐")
        self.assertEqual(float(stored["latitude"]), 37.5283)

    def test_single_character_name_needs_revision_report(self):
        persistence._create_record(persistence.CHARACTERS, {"name": "이", "last_mentioned_episode_id": "2025-02-27T09:30:00.000Z"})
        result, _ = self._run(_HAPPY_OUTPUTS)

        self.assertTrue(result.ok, result.error)
        self.assertEqual(
            self.ddb.records(CHARACTERS_TABLE)["이"]["last_mentioned_episode_id"], "2025-02-27T09:30:00.000Z"
        )
        self.assertNotIn("이", self.ddb.records(EPISODES_TABLE)[_EPISODE_ID]["characters"])

    def test_mentions_start_at_a_word_boundary(self):
        content = "이준은 한강 다리를 건넜다."
        self.assertTrue(orchestrator._is_mentioned(content, "이준", []))
        self.assertTrue(orchestrator._is_mentioned(content, "한강 다리", []))
        self.assertFalse(orchestrator._is_mentioned(content, "준은", []))
        self.assertFalse(orchestrator._is_mentioned(content, "이", []))
        self.assertTrue(orchestrator._is_mentioned(content, "이", ["이"]))


_RAINY = json.dumps({"latitude": 37.53, "longitude": 126.93, "current": {"weather_code": 61, "temperature_2m": 4.0}})


class WeatherGroundingTests(OrchestratorTestCase):
    def _run_with_weather(self, outputs):
        tools = CombinedToolClient(self.reader, GatewayToolClient(ToolGateway(external_tools.build_external_registry())))
        generator = ScriptedGenerator(outputs)
        result = asyncio.run(
            generate_chapter(_REQUEST, reader=self.reader, writer=self.writer, generator=generator, tools=tools)
        )
        return result, generator

    @patch.object(external_tools, "_urlopen", return_value=_RAINY)
    def test_prewriting_weather_reaches_draft_and_place(self, mock_urlopen):
        result, generator = self._run_with_weather(_HAPPY_OUTPUTS)

        self.assertTrue(result.ok, result.error)
        self.assertEqual(self.ddb.records(PLACES_TABLE)["한강 다리"]["last_weather_condition"], "약한 비")
        drafting_prompt = next(p for p in generator.prompts if p.startswith("# Drafting Phase"))
        self.assertIn("현재 날씨: 약한 비", drafting_prompt)
        offered = [t["name"] for t in generator.tool_lists[1]]
        self.assertIn("weather.openMeteo.lookup", offered)
        self.assertIn("time.now", offered)
        self.assertIn("characters.get", offered)
        mock_urlopen.assert_called_once()
        self.assertIn("latitude=37.5283", mock_urlopen.call_args[0][0].full_url)

    @patch.object(external_tools, "_urlopen", side_effect=urllib.error.URLError("offline"))
    def test_failed_weather_lookup_is_skipped(self, _mock_urlopen):
        result, _ = self._run_with_weather(_HAPPY_OUTPUTS)

        self.assertTrue(result.ok, result.error)
        self.assertFalse(result.fallback_used)
        self.assertNotIn("last_weather_condition", self.ddb.records(PLACES_TABLE)["한강 다리"])


class PersistJobTests(OrchestratorTestCase):
    def _finished_context(self):
        ctx = new_job_context(dt.datetime(2025, 3, 1, 9, 30, tzinfo=dt.timezone.utc))
        machine = ChapterOrchestrator(reader=self.reader, generator=ScriptedGenerator(_HAPPY_OUTPUTS))
        return asyncio.run(machine.run(ctx))

    def test_persist_before_finalize_is_refused(self):
        ctx = new_job_context(dt.datetime(2025, 3, 1, 9, 30, tzinfo=dt.timezone.utc))
        with self.assertRaises(PhaseTransitionError):
            asyncio.run(persist_job(ctx, self.writer))
        self.assertEqual(self.ddb.records(EPISODES_TABLE).get(ctx.id), None)

    def test_upsert_is_idempotent(self):
        ctx = self._finished_context()
        place = next(p for p in ctx.places if p["name"] == "서울역")

        first = asyncio.run(orchestrator._upsert(self.writer, "places", place, ctx.id))
        after_first = {k: v for k, v in self.ddb.records(PLACES_TABLE)["서울역"].items() if k != "updated_at"}
        second = asyncio.run(orchestrator._upsert(self.writer, "places", place, ctx.id))
        after_second = {k: v for k, v in self.ddb.records(PLACES_TABLE)["서울역"].items() if k != "updated_at"}

        self.assertEqual((first, second), ("created", "updated"))
        self.assertEqual(after_first, after_second)

    def test_update_after_duplicate_skips_blank_fields(self):
        record = {
            "name": "이준",
            "personality": "",
            "background": "",
            "appearance": "",
            "current_place": "서울역",
            "relationships": {},
            "major_events": [],
            "character_traits": [],
            "current_status": "부상",
            "last_mentioned_episode_id": _EPISODE_ID,
        }
        outcome = asyncio.run(orchestrator._upsert(self.writer, "characters", record, _EPISODE_ID))

        self.assertEqual(outcome, "updated")
        stored = self.ddb.records(CHARACTERS_TABLE)["이준"]
        self.assertEqual(stored["current_place"], "서울역")
        self.assertEqual(stored["current_status"], "부상")
        self.assertEqual(stored["personality"], "침착함")
        self.assertEqual(stored["major_events"], ["마포 탈출"])

    def test_non_duplicate_errors_propagate(self):
        ctx = self._finished_context()
        bad_place = dict(ctx.places[0], latitude=500)
        with self.assertRaises(ToolCallError) as raised:
            asyncio.run(orchestrator._upsert(self.writer, "places", bad_place, ctx.id))
        self.assertEqual(raised.exception.code, -32602)

    def test_duplicate_detection(self):
        self.assertTrue(orchestrator.is_duplicate_error(ToolCallError(-32002, "x", {"error_type": "DuplicateRecordError"})))
        self.assertTrue(orchestrator.is_duplicate_error(ToolCallError(-32002, "Place '서울역' already exists")))
        self.assertTrue(orchestrator.is_duplicate_error(ToolCallError(-32002, "DUPLICATE key")))
        self.assertFalse(orchestrator.is_duplicate_error(ToolCallError(-32002, "Place '서울역' not found")))


if __name__ == "__main__":
    unittest.main()
