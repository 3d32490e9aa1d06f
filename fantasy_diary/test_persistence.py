import unittest
from unittest.mock import patch

from botocore.exceptions import ClientError

from fantasy_diary import persistence
from fantasy_diary.config import CHARACTERS_TABLE, EPISODES_TABLE, PLACES_TABLE
from fantasy_diary.errors import DuplicateRecordError, RecordNotFoundError, ToolExecutionError
from fantasy_diary.test_doubles import FakeDynamoDB


class PersistenceTests(unittest.TestCase):
    def setUp(self):
        self.ddb = FakeDynamoDB({EPISODES_TABLE: "id", CHARACTERS_TABLE: "name", PLACES_TABLE: "name"}, page_size=2)
        patcher = patch.object(persistence, "_get_ddb", return_value=self.ddb)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _episode(self, episode_id, summary="요약"):
        return persistence._create_record(
            persistence.EPISODES,
            {"id": episode_id, "content": "본문", "summary": summary, "characters": [], "places": []},
        )

    def test_episodes_list_newest_first_across_pages(self):
        for episode_id in (
            "2025-03-01T09:00:00.000Z",
            "2025-03-03T09:00:00.000Z",
            "2025-03-02T09:00:00.000Z",
            "2025-03-04T09:00:00.000Z",
            "2025-03-05T09:00:00.000Z",
        ):
            self._episode(episode_id)

        listed = persistence._list_records(persistence.EPISODES, 3)
        self.assertEqual(
            [e["id"] for e in listed],
            ["2025-03-05T09:00:00.000Z", "2025-03-04T09:00:00.000Z", "2025-03-03T09:00:00.000Z"],
        )
        self.assertGreater(self.ddb.calls.count("scan"), 1)

    def test_characters_list_sorted_by_name(self):
        for name in ("민서", "이준", "강도윤"):
            persistence._create_record(persistence.CHARACTERS, {"name": name})
        listed = persistence._list_records(persistence.CHARACTERS, 50)
        self.assertEqual([c["name"] for c in listed], ["강도윤", "민서", "이준"])

    def test_create_stamps_timestamps_and_rejects_duplicates(self):
        record = self._episode("2025-03-01T09:00:00.000Z")
        self.assertIn("created_at", record)
        self.assertIn("updated_at", record)
        with self.assertRaises(DuplicateRecordError) as ctx:
            self._episode("2025-03-01T09:00:00.000Z", summary="다른 요약")
        self.assertIn("already exists", str(ctx.exception))
        stored = persistence._get_record(persistence.EPISODES, "2025-03-01T09:00:00.000Z")
        self.assertEqual(stored["summary"], "요약")

    def test_coordinates_round_trip_as_numbers(self):
        persistence._create_record(
            persistence.PLACES,
            {"name": "서울역", "current_situation": "봉쇄됨", "latitude": 37.5547, "longitude": 126.9706},
        )
        place = persistence._get_record(persistence.PLACES, "서울역")
        self.assertEqual(place["latitude"], 37.5547)
        self.assertIsInstance(place["longitude"], float)

    def test_update_changes_only_given_fields(self):
        persistence._create_record(persistence.CHARACTERS, {"name": "이준", "personality": "침착함", "current_status": "건강"})
        persistence._update_record(persistence.CHARACTERS, "이준", {"current_status": "부상", "personality": None})
        stored = persistence._get_record(persistence.CHARACTERS, "이준")
        self.assertEqual(stored["current_status"], "부상")
        self.assertEqual(stored["personality"], "침착함")

    def test_update_without_fields_is_a_noop(self):
        self.assertEqual(persistence._update_record(persistence.CHARACTERS, "아무개", {"name": "아무개"}), {"ok": True})
        self.assertNotIn("update_item", self.ddb.calls)

    def test_update_and_delete_of_missing_record(self):
        with self.assertRaises(RecordNotFoundError):
            persistence._update_record(persistence.PLACES, "없는 곳", {"current_situation": "?"})
        with self.assertRaises(RecordNotFoundError):
            persistence._delete_record(persistence.PLACES, "없는 곳")

    def test_delete_removes_record(self):
        persistence._create_record(persistence.PLACES, {"name": "남산타워"})
        persistence._delete_record(persistence.PLACES, "남산타워")
        self.assertIsNone(persistence._get_record(persistence.PLACES, "남산타워"))

    def test_store_errors_become_execution_errors(self):
        self.ddb.fail_with = ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}}, "Scan"
        )
        with self.assertRaises(ToolExecutionError) as ctx:
            persistence._list_records(persistence.PLACES, 10)
        self.assertIn("ProvisionedThroughputExceededException", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
