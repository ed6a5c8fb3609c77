# run.py
# Entry point. Config and wiring only. No logic lives here.
#
# Registers a small demo strategy, runs it against a few inputs and prints
# the execution record. Point BITWISE_RESULTS_PATH at a file to keep results
# between runs.

import sys

from bitwise_engine import config, display
from bitwise_engine.bits import load_bits
from bitwise_engine.engine import Engine
from bitwise_engine.models import Role, ScriptRef
from bitwise_engine.registry import ScriptRepository, StrategyRepository
from bitwise_engine.store import ResultStore
from bitwise_engine.verifier import STRICT, verify

# Plans one balancing pass, then a parallel pair over the two halves.
# Once the budget runs out it asks for a single free BUFFER step.
SCHEDULER = """
def execute(ctx):
    n = len(ctx["bits"])
    if ctx["budget_exhausted"]:
        return ["idle"]
    half = n // 2
    return [
        "balance",
        [
            {"algorithm": "smooth", "range": [0, half]},
            {"algorithm": "smooth", "range": [half, n]},
        ],
        "balance",
        "balance",
    ]
"""

# Moves the hamming weight one bit towards 50%.
BALANCE = """
def execute(ctx):
    bits = ctx["bits"]
    ones = bits.count("1")
    if ones * 2 == len(bits):
        return None
    if ones * 2 < len(bits):
        return {"operation": "BSET", "params": {"position": bits.index("0")}}
    return {"operation": "BCLR", "params": {"position": bits.index("1")}}
"""

# Gray-encodes its slice when that lowers the transition count.
SMOOTH = """
def execute(ctx):
    bits = ctx["bits"]
    encoded = execute_operation("GRAY", bits, {"direction": "encode"})
    if get_metric("transition_count", encoded) >= get_metric("transition_count", bits):
        log("gray encoding would not reduce transitions")
        return None
    return {"operation": "GRAY", "params": {"direction": "encode"}, "estimated_cost": get_cost("GRAY")}
"""

IDLE = """
def execute(ctx):
    return {"operation": "BUFFER"}
"""

# Rewards lower transition rate; vetoes anything that changes the length.
SCORE = """
def execute(ctx):
    before, after = ctx["metrics_before"], ctx["metrics_after"]
    if before["length"] != after["length"]:
        return {"score": 0, "veto": True}
    return before["transition_rate"] - after["transition_rate"] + 0.1
"""

# Never let a single step spend more than half of what is left.
BUDGET_POLICY = """
def execute(ctx):
    if ctx["cost"] > 0 and ctx["cost"] > ctx["budget_remaining"] / 2:
        return {"accept": False, "reason": "step would spend over half the remaining budget"}
    return {"accept": True}
"""

SCRIPTS = [
    ScriptRef(name="planner", source=SCHEDULER, role=Role.SCHEDULER),
    ScriptRef(name="balance", source=BALANCE, role=Role.ALGORITHM),
    ScriptRef(name="smooth", source=SMOOTH, role=Role.ALGORITHM),
    ScriptRef(name="idle", source=IDLE, role=Role.ALGORITHM),
    ScriptRef(name="transitions", source=SCORE, role=Role.SCORING),
    ScriptRef(name="half-budget", source=BUDGET_POLICY, role=Role.POLICY),
]

# (input bits, budget)
INPUTS = [
    ("1111111100000000", 10),
    ("1010101010101010", 4),
    ("0000000000000001", 0),
]


def main() -> None:
    display.configure_logging(config.LOG_LEVEL)

    scripts = ScriptRepository(SCRIPTS)
    strategies = StrategyRepository(scripts)
    strategy = strategies.create(
        name="balance-and-smooth",
        scheduler_script="planner",
        algorithm_scripts=["balance", "smooth", "idle"],
        scoring_scripts=["transitions"],
        policy_scripts=["half-budget"],
        tags=["demo"],
    )
    validation = strategies.validate(strategy)
    if not validation.valid:
        display.halt("; ".join(validation.errors))
        return

    store = ResultStore()
    engine = Engine(scripts, store=store)
    engine.subscribe(display.progress)

    inputs = INPUTS
    if len(sys.argv) > 1:
        inputs = [(load_bits(sys.argv[1]), config.DEFAULT_BUDGET)]

    for bits, budget in inputs:
        display.banner(strategy.name, bits, budget)
        result = engine.run(strategy, bits, budget)
        for plan in engine.plans:
            display.plan_parsed(plan)
        if result.error:
            display.halt(result.error)
        display.execution_summary(result)
        display.execution_tree(result)
        display.verification_report(verify(result, mode=STRICT))
        display.final_result(result)

    display.store_statistics(store.statistics())


if __name__ == "__main__":
    main()
