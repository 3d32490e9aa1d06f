import unittest

from fantasy_diary.errors import SchemaValidationError
from fantasy_diary.schema_validation import check_schema, validate
from fantasy_diary.tool_registry import ToolDefinition


async def _noop(args):
    return args


def _tool(schema, allowed_phases=()):
    return ToolDefinition(
        name="things.get",
        description="test tool",
        input_schema=schema,
        handler=_noop,
        allowed_phases=allowed_phases,
    )


class CheckSchemaTests(unittest.TestCase):
    def test_reports_every_violation(self):
        schema = {
            "type": "object",
            "required": ["name", "latitude"],
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "latitude": {"type": "number", "minimum": -90, "maximum": 90},
                "tags": {"type": "array", "items": {"type": "string"}, "maxItems": 2},
            },
            "additionalProperties": False,
        }
        violations = []
        check_schema(schema, {"name": "", "tags": ["a", 3, "c"], "extra": True}, "", violations)
        by_field = {(v["field"], v["constraint"]) for v in violations}
        self.assertIn(("latitude", "required"), by_field)
        self.assertIn(("name", "minLength"), by_field)
        self.assertIn(("tags", "maxItems"), by_field)
        self.assertIn(("tags[1]", "type"), by_field)
        self.assertIn(("extra", "additionalProperties"), by_field)

    def test_defaults_are_applied(self):
        schema = {
            "type": "object",
            "properties": {"limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 10}},
        }
        violations = []
        narrowed = check_schema(schema, {}, "", violations)
        self.assertEqual(violations, [])
        self.assertEqual(narrowed, {"limit": 10})

    def test_integral_float_narrows_to_int(self):
        violations = []
        narrowed = check_schema({"type": "integer"}, 5.0, "limit", violations)
        self.assertEqual(violations, [])
        self.assertEqual(narrowed, 5)
        self.assertIsInstance(narrowed, int)

    def test_boolean_is_not_a_number(self):
        violations = []
        check_schema({"type": "number"}, True, "latitude", violations)
        self.assertEqual(violations[0]["constraint"], "type")

    def test_enum_and_formats(self):
        violations = []
        check_schema({"type": "string", "enum": ["a", "b"]}, "c", "mode", violations)
        check_schema({"type": "string", "format": "date-time"}, "yesterday", "id", violations)
        check_schema({"type": "string", "format": "uuid"}, "not-a-uuid", "token", violations)
        self.assertEqual([v["constraint"] for v in violations], ["enum", "format", "format"])

    def test_valid_timestamp_passes(self):
        violations = []
        check_schema({"type": "string", "format": "date-time"}, "2025-03-01T09:30:00.000Z", "id", violations)
        self.assertEqual(violations, [])


class ValidateTests(unittest.TestCase):
    def test_missing_arguments_treated_as_empty_object(self):
        tool = _tool({"type": "object", "required": ["name"], "properties": {"name": {"type": "string"}}})
        with self.assertRaises(SchemaValidationError) as ctx:
            validate(tool, None)
        self.assertEqual(ctx.exception.violations[0]["field"], "name")
        self.assertIn("things.get", str(ctx.exception))

    def test_phase_outside_allowed_set_is_rejected(self):
        schema = {
            "type": "object",
            "properties": {
                "usage": {
                    "type": "object",
                    "properties": {
                        "phase": {"type": "string", "enum": ["prewriting", "drafting", "revision"]},
                        "purpose": {"type": "string"},
                    },
                },
            },
        }
        tool = _tool(schema, allowed_phases=("drafting",))
        with self.assertRaises(SchemaValidationError) as ctx:
            validate(tool, {"usage": {"phase": "revision", "purpose": "확인"}})
        self.assertEqual(ctx.exception.violations[0]["constraint"], "allowedPhases")

        narrowed = validate(tool, {"usage": {"phase": "drafting", "purpose": "확인"}})
        self.assertEqual(narrowed["usage"]["phase"], "drafting")
        self.assertEqual(validate(tool, {}), {})


if __name__ == "__main__":
    unittest.main()
