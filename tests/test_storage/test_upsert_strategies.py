from __future__ import annotations

import json
from datetime import date
from unittest.mock import MagicMock

import pytest

from safetykg.storage.upsert_strategies import (
    EntityWrite,
    FallbackUpsert,
    RelationWrite,
    WithExtensionUpsert,
    loads_properties,
    select_strategy,
    upsert_relation,
)


def _tx(*, nodes_created: int = 0, relationships_created: int = 0, record=None) -> MagicMock:
    tx = MagicMock()
    result = tx.run.return_value
    result.consume.return_value.counters.nodes_created = nodes_created
    result.consume.return_value.counters.relationships_created = relationships_created
    result.single.return_value = record
    return tx


def _write(**overrides) -> EntityWrite:
    values = {
        "node_id": "entity_1",
        "name": "水泵",
        "type": "设备",
        "properties": {"功率": "7kW", "检修日期": date(2024, 5, 1)},
        "file_ids": ["file_a"],
    }
    values.update(overrides)
    return EntityWrite(**values)


def test_create_properties_include_name_and_type() -> None:
    assert _write().create_properties() == {
        "功率": "7kW",
        "检修日期": "2024-05-01",
        "name": "水泵",
        "type": "设备",
    }


def test_merge_properties_keep_stored_name_and_type() -> None:
    merged = _write().merge_properties({"name": "泵", "type": "设备", "功率": "5kW", "位置": "泵房"})

    assert merged == {
        "name": "泵",
        "type": "设备",
        "功率": "7kW",
        "位置": "泵房",
        "检修日期": "2024-05-01",
    }


def test_with_extension_runs_single_merge() -> None:
    tx = _tx(nodes_created=1)

    created = WithExtensionUpsert().upsert(tx, _write())

    assert created is True
    assert tx.run.call_count == 1
    query = tx.run.call_args.args[0]
    kwargs = tx.run.call_args.kwargs
    assert "apoc.map.merge" in query
    assert kwargs["id"] == "entity_1"
    assert kwargs["fileIds"] == ["file_a"]
    assert kwargs["properties"] == {"功率": "7kW", "检修日期": "2024-05-01"}
    assert json.loads(kwargs["createJson"])["name"] == "水泵"


def test_with_extension_reports_match() -> None:
    assert WithExtensionUpsert().upsert(_tx(nodes_created=0), _write()) is False


def test_fallback_create_skips_update() -> None:
    tx = _tx(nodes_created=1, record={"existingPropertiesJson": '{"name": "水泵"}'})

    assert FallbackUpsert().upsert(tx, _write()) is True
    assert tx.run.call_count == 1
    assert "apoc" not in tx.run.call_args.args[0]


def test_fallback_match_merges_client_side() -> None:
    stored = json.dumps({"name": "泵", "type": "设备", "功率": "5kW", "位置": "泵房"}, ensure_ascii=False)
    tx = _tx(nodes_created=0, record={"existingPropertiesJson": stored})

    created = FallbackUpsert().upsert(tx, _write())

    assert created is False
    assert tx.run.call_count == 2
    update_call = tx.run.call_args_list[1]
    assert update_call.args[0] == FallbackUpsert.UPDATE_QUERY
    assert json.loads(update_call.kwargs["propertiesJson"]) == {
        "name": "泵",
        "type": "设备",
        "功率": "7kW",
        "位置": "泵房",
        "检修日期": "2024-05-01",
    }
    assert update_call.kwargs["fileIds"] == ["file_a"]


def test_fallback_match_with_corrupt_json_starts_fresh() -> None:
    tx = _tx(nodes_created=0, record={"existingPropertiesJson": "{not json"})

    FallbackUpsert().upsert(tx, _write(properties={"功率": "7kW"}))

    merged = json.loads(tx.run.call_args_list[1].kwargs["propertiesJson"])
    assert merged == {"功率": "7kW", "name": "水泵", "type": "设备"}


def test_upsert_relation_parameters() -> None:
    tx = _tx(relationships_created=1)
    write = RelationWrite(
        source_id="a", target_id="b", type="causes", properties={"等级": "较大风险"}, confidence=0.9
    )

    assert upsert_relation(tx, write) is True
    kwargs = tx.run.call_args.kwargs
    assert kwargs["sourceId"] == "a"
    assert kwargs["targetId"] == "b"
    assert kwargs["type"] == "causes"
    assert kwargs["confidence"] == pytest.approx(0.9)
    assert json.loads(kwargs["propertiesJson"]) == {"等级": "较大风险"}


def test_upsert_relation_update_reports_not_created() -> None:
    assert upsert_relation(_tx(relationships_created=0), RelationWrite(source_id="a", target_id="b", type="causes")) is False


@pytest.mark.parametrize("raw", [None, "", "{bad", "[1, 2]", "3"])
def test_loads_properties_tolerates_bad_input(raw) -> None:
    assert loads_properties(raw) == {}


def test_select_strategy() -> None:
    assert isinstance(select_strategy(True), WithExtensionUpsert)
    assert isinstance(select_strategy(False), FallbackUpsert)
