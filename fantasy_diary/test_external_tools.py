import json
import unittest
import urllib.error
from unittest.mock import patch

from fantasy_diary import external_tools
from fantasy_diary.gateway import ToolGateway

_OPEN_METEO_PAYLOAD = {
    "latitude": 37.56,
    "longitude": 126.98,
    "timezone": "Asia/Seoul",
    "current": {
        "time": "2025-03-01T18:00",
        "temperature_2m": 4.26,
        "apparent_temperature": 1.1,
        "relative_humidity_2m": 71,
        "precipitation": 0.4,
        "weather_code": 61,
        "wind_speed_10m": 12.5,
        "wind_direction_10m": 300,
    },
}


def _lookup(gateway, arguments):
    return gateway.handle_sync(
        {
            "jsonrpc": "2.0",
            "id": "w-1",
            "method": "tools/call",
            "params": {"name": "weather.openMeteo.lookup", "arguments": arguments},
        }
    )


class WeatherLookupTests(unittest.TestCase):
    def setUp(self):
        self.gateway = ToolGateway(external_tools.build_external_registry())

    @patch.object(external_tools, "_urlopen", return_value=json.dumps(_OPEN_METEO_PAYLOAD))
    def test_lookup_shapes_current_weather(self, mock_urlopen):
        response = _lookup(self.gateway, {"latitude": 37.5665, "longitude": 126.978})
        result = json.loads(response["result"]["content"][0]["text"])

        self.assertEqual(result["condition"], "약한 비")
        self.assertEqual(result["temperature_c"], 4.26)
        self.assertEqual(result["wind"]["cardinal"], "WNW")
        self.assertEqual(result["timezone"], "Asia/Seoul")
        self.assertIn("기온 4.3°C", result["hint"])
        self.assertIn("강수 0.4 mm", result["hint"])

        req = mock_urlopen.call_args[0][0]
        self.assertIn("/v1/forecast?", req.full_url)
        self.assertIn("timezone=Asia%2FSeoul", req.full_url)
        self.assertIn("latitude=37.5665", req.full_url)

    @patch.object(external_tools, "_urlopen")
    def test_out_of_range_coordinates_never_fetch(self, mock_urlopen):
        response = _lookup(self.gateway, {"latitude": 137.0, "longitude": 126.978})
        self.assertEqual(response["error"]["code"], -32602)
        mock_urlopen.assert_not_called()

    @patch.object(external_tools, "_urlopen", return_value=json.dumps(_OPEN_METEO_PAYLOAD))
    def test_lookup_is_limited_to_writing_phases(self, mock_urlopen):
        usage = {"phase": "revision", "purpose": "장면 날씨 확인"}
        response = _lookup(self.gateway, {"latitude": 37.5665, "longitude": 126.978, "usage": usage})
        self.assertEqual(response["error"]["code"], -32602)
        self.assertEqual(response["error"]["data"]["violations"][0]["constraint"], "allowedPhases")
        mock_urlopen.assert_not_called()

        usage = {"phase": "prewriting", "purpose": "장면 날씨 확인"}
        response = _lookup(self.gateway, {"latitude": 37.5665, "longitude": 126.978, "usage": usage})
        self.assertNotIn("error", response)
        mock_urlopen.assert_called_once()

    @patch.object(
        external_tools,
        "_urlopen",
        side_effect=urllib.error.HTTPError("https://api.open-meteo.com", 502, "Bad Gateway", {}, None),
    )
    def test_upstream_failure_is_execution_error(self, _mock_urlopen):
        response = _lookup(self.gateway, {"latitude": 37.5, "longitude": 127.0})
        self.assertEqual(response["error"]["code"], -32002)
        self.assertIn("http_502", response["error"]["message"])

    @patch.object(external_tools, "_urlopen", return_value=json.dumps({"latitude": 37.5}))
    def test_missing_current_block_is_execution_error(self, _mock_urlopen):
        response = _lookup(self.gateway, {"latitude": 37.5, "longitude": 127.0})
        self.assertEqual(response["error"]["code"], -32002)


class HelperTests(unittest.TestCase):
    def test_describe_weather_code(self):
        self.assertEqual(external_tools.describe_weather_code(0), "맑음")
        self.assertEqual(external_tools.describe_weather_code(None), "알 수 없는 날씨")
        self.assertEqual(external_tools.describe_weather_code(42), "날씨 코드 42")

    def test_time_now_uses_seoul_offset(self):
        gateway = ToolGateway(external_tools.build_external_registry())
        response = gateway.handle_sync(
            {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "time.now", "arguments": {}}}
        )
        result = json.loads(response["result"]["content"][0]["text"])
        self.assertEqual(result["timezone"], "Asia/Seoul")
        self.assertTrue(result["iso"].endswith("+09:00"))


if __name__ == "__main__":
    unittest.main()
