from llm_relay.tools.definitions import ToolDef, ToolParam, parse_arguments


def test_parameters_schema():
    tool = ToolDef(
        name="get_weather",
        description="Look up the weather",
        params={
            "city": ToolParam(name="city", description="City name", required=True),
            "days": ToolParam(name="days", schema={"type": "integer", "minimum": 1}),
        },
    )
    schema = tool.parameters_schema()
    assert schema["type"] == "object"
    assert schema["required"] == ["city"]
    assert schema["properties"]["city"] == {"type": "string", "description": "City name"}
    assert schema["properties"]["days"] == {"type": "integer", "minimum": 1}


def test_parse_arguments():
    assert parse_arguments('{"city": "Paris"}') == {"city": "Paris"}
    assert parse_arguments({"a": 1}) == {"a": 1}
    assert parse_arguments("") == {}
    assert parse_arguments("{broken") == {"_raw": "{broken"}
    assert parse_arguments("[1]") == {"_raw": "[1]"}
    assert parse_arguments(None) == {}
