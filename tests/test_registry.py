import pytest

from bitwise_engine.errors import DuplicateStrategyError, MissingScriptError
from bitwise_engine.models import Role, ScriptRef
from bitwise_engine.registry import ScriptRepository, StrategyRepository


def _scripts():
    return ScriptRepository([
        ScriptRef(name="sched", source="def execute(ctx):\n    return []\n", role=Role.SCHEDULER),
        ScriptRef(name="flip", source="def execute(ctx):\n    return None\n", role=Role.ALGORITHM),
        ScriptRef(name="score", source="def execute(ctx):\n    return 0\n", role=Role.SCORING),
        ScriptRef(name="gate", source='def execute(ctx):\n    return {"accept": True}\n', role=Role.POLICY),
    ])

# ---------------------------------------------------------------------------
# Scripts
# ---------------------------------------------------------------------------

def test_script_lookup():
    scripts = _scripts()
    assert "flip" in scripts
    assert len(scripts) == 4
    assert scripts.get("missing") is None
    assert [s.name for s in scripts.by_role(Role.POLICY)] == ["gate"]
    assert scripts.names() == ["sched", "flip", "score", "gate"]

def test_require_raises_missing_script():
    with pytest.raises(MissingScriptError, match="Scheduler script 'nope' not found"):
        _scripts().require("nope", Role.SCHEDULER)

def test_add_replaces_and_keeps_created():
    scripts = _scripts()
    original = scripts.get("flip")
    updated = scripts.add(ScriptRef(name="flip", source="# v2", role=Role.ALGORITHM))

    assert scripts.get("flip").source == "# v2"
    assert updated.created == original.created
    assert updated.modified >= original.modified
    assert updated.digest != original.digest

def test_remove():
    scripts = _scripts()
    scripts.remove("flip")
    scripts.remove("flip")
    assert "flip" not in scripts

@pytest.mark.parametrize("group, tag", [("ai", "ai"), ("custom", "custom")])
def test_ui_groups_collapse_to_algorithm(group, tag):
    script = ScriptRef.model_validate({"name": "x", "role": group})
    assert script.role is Role.ALGORITHM
    assert script.tag == tag

def test_policies_alias():
    assert ScriptRef.model_validate({"name": "x", "role": "policies"}).role is Role.POLICY

# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def test_create_and_lookup():
    strategies = StrategyRepository(_scripts())
    strategy = strategies.create("s", "sched", ["flip"], ["score"], ["gate"], tags=["demo"])

    assert strategy.id.startswith("strat_")
    assert strategies.get(strategy.id) == strategy
    assert strategies.get_by_name("s") == strategy
    assert strategy.script_names() == ["sched", "flip", "score", "gate"]

def test_duplicate_name_rejected():
    strategies = StrategyRepository(_scripts())
    strategies.create("s", "sched")
    with pytest.raises(DuplicateStrategyError):
        strategies.create("s", "sched")

def test_create_requires_known_scheduler():
    with pytest.raises(MissingScriptError):
        StrategyRepository(_scripts()).create("s", "ghost")

def test_create_without_script_repository_skips_checks():
    strategy = StrategyRepository().create("s", "ghost")
    assert strategy.scheduler_script == "ghost"

def test_update_and_delete():
    strategies = StrategyRepository(_scripts())
    first = strategies.create("first", "sched")
    strategies.create("second", "sched")

    renamed = strategies.update(first.id, name="renamed", algorithm_scripts=["flip"])
    assert renamed.id == first.id
    assert renamed.algorithm_scripts == ["flip"]

    with pytest.raises(DuplicateStrategyError):
        strategies.update(first.id, name="second")
    with pytest.raises(KeyError):
        strategies.update("strat_missing", name="x")

    strategies.delete(first.id)
    assert strategies.get(first.id) is None
    assert [s.name for s in strategies.all()] == ["second"]

def test_validate_reports_missing_and_miscast_scripts():
    strategies = StrategyRepository(_scripts())
    strategy = strategies.create("s", "sched", algorithm_scripts=["score", "ghost"])
    report = strategies.validate(strategy)

    assert not report.valid
    assert "Script 'score' is a scoring script, not algorithm" in report.errors
    assert "Algorithm script 'ghost' not found" in report.errors
    assert any("No scoring scripts" in w for w in report.warnings)

def test_validate_clean_strategy():
    strategies = StrategyRepository(_scripts())
    report = strategies.validate(strategies.create("s", "sched", ["flip"], ["score"], ["gate"]))
    assert report.valid
    assert report.errors == []
    assert report.warnings == []
