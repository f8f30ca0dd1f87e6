"""
Flow-control executors: Router, Conditional, Loop and Parallel.

Router and Conditional pick exactly one output port. Loop and Parallel own a
private region of the graph (the loop body, or one subgraph per branch) and
run it through ``ctx.run_region``; their outcome is the merged result of those
nested runs.
"""

import asyncio
import logging
from numbers import Number
from typing import Any

from pathway.errors import (
    ExecutionError,
    NodeConfigurationError,
    NodeExecutionFailed,
    NoMatchingRoute,
    PathwayError,
)
from pathway.graph.node import (
    CRITERIA_SUBJECT,
    FALSE_PORT,
    LOOP_BODY_PORT,
    LOOP_COMPLETE_PORT,
    TRUE_PORT,
    ConditionalConfig,
    LoopConfig,
    LoopType,
    MergeStrategy,
    NodeSpec,
    ParallelConfig,
    RouterConfig,
)
from pathway.graph.outcome import Branch, ExecutionOutcome, Fail, Output
from pathway.graph.registry import NodeContext, RegionResult, merged_input, primary_input
from pathway.graph.safe_eval import ExpressionError, safe_eval

logger = logging.getLogger(__name__)

# Keys checked, in order, when a loop body returns a mapping instead of a number
SCORE_KEYS = ("score", "masteryScore", "value")


def evaluate_condition(expression: str, namespace: dict[str, Any], node_id: str) -> bool:
    """Evaluate a route/loop/conditional expression; errors count as not satisfied."""
    try:
        return bool(safe_eval(expression, namespace))
    except ExpressionError as e:
        logger.warning(f"Condition on '{node_id}' not evaluable ({e}): {expression!r}")
        return False


def _config_or_fail(ctx: NodeContext, expected: type) -> Any:
    config = ctx.config
    if not isinstance(config, expected):
        raise NodeConfigurationError(ctx.node.id, f"expected {expected.__name__}")
    return config


class RouterExecutor:
    """
    Selects exactly one declared route.

    Route conditions are evaluated in declaration order against the run's
    bindings and the node's inputs; ``value`` is bound to the subject of the
    routing criterion (e.g. ``elpaLevel`` for ``elpa-level``). With AI routing
    enabled the provider picks a route id first, and the conditions decide only
    if the provider's answer names no route.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        config: RouterConfig = _config_or_fail(ctx, RouterConfig)
        namespace = ctx.namespace(inputs)
        namespace["value"] = self._subject(config, namespace)

        selected: str | None = None
        reason = ""

        if config.uses_ai:
            if ctx.llm is None:
                logger.warning(f"Router '{node.id}' wants AI routing but no provider is set")
            else:
                from pathway.graph.ai_node import choose_route

                try:
                    selected, reason = await choose_route(ctx, config, namespace)
                except PathwayError as e:
                    logger.warning(f"AI routing failed on '{node.id}', using conditions: {e}")

        if selected is None:
            for route in config.routes:
                if route.condition and evaluate_condition(route.condition, namespace, node.id):
                    selected = route.id
                    reason = f"Matched condition {route.condition!r}"
                    break

        used_default = False
        if selected is None:
            if config.default_route is None:
                return Fail(
                    NoMatchingRoute(
                        f"No route matched on router '{node.id}' and no defaultRoute is set",
                        node_id=node.id,
                    )
                )
            selected = config.default_route
            used_default = True
            reason = "No route matched; using default route"

        logger.info(f"   🔀 {node.id} -> {selected}")
        value = {
            **merged_input(inputs),
            "selectedRoute": selected,
            "routingReason": f"Routed on {config.routing_criteria}: {reason}",
            "usedDefault": used_default,
        }
        return Branch(selected, value)

    @staticmethod
    def _subject(config: RouterConfig, namespace: dict[str, Any]) -> Any:
        for key in CRITERIA_SUBJECT.get(config.routing_criteria, ()):
            if namespace.get(key) is not None:
                return namespace[key]
        return None


class ConditionalExecutor:
    """Branches on ``true`` / ``false`` using the sandboxed evaluator."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        config: ConditionalConfig = _config_or_fail(ctx, ConditionalConfig)
        result = evaluate_condition(config.condition, ctx.namespace(inputs), node.id)
        value = {
            **merged_input(inputs),
            "conditionMet": result,
            "conditionEvaluated": config.condition,
        }
        return Branch(TRUE_PORT if result else FALSE_PORT, value)


def numeric_score(output: Any) -> float | None:
    """The score carried by a loop body's output, if any."""
    if isinstance(output, bool):
        return None
    if isinstance(output, Number):
        return float(output)
    if isinstance(output, dict):
        for key in SCORE_KEYS:
            value = output.get(key)
            if isinstance(value, Number) and not isinstance(value, bool):
                return float(value)
    return None


class LoopExecutor:
    """
    Re-dispatches the loop body sequentially.

    Each iteration writes ``iterationVariable`` (1-based) into the loop's scope,
    runs the body in a child scope and commits the body's bindings when the
    iteration succeeds. Exhausting ``maxIterations`` is not a failure: the
    loop completes on ``loop-complete`` with the last successful output.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        config: LoopConfig = _config_or_fail(ctx, LoopConfig)

        if config.loop_type == LoopType.UNTIL_MASTERY and config.mastery_threshold is None:
            return Fail(NodeConfigurationError(node.id, "until-mastery loops require masteryThreshold"))
        if config.loop_type == LoopType.UNTIL_CONDITION and not config.exit_condition:
            return Fail(NodeConfigurationError(node.id, "until-condition loops require exitCondition"))

        items: list[Any] | None = None
        if config.loop_type == LoopType.FOREACH_ITEM:
            items = self._resolve_items(config, inputs, ctx)
            if items is None:
                return Fail(
                    NodeConfigurationError(
                        node.id, "foreach-item loops require items, itemsVariable or a list input"
                    )
                )
            total = len(items)
        else:
            total = config.max_iterations

        seed = primary_input(inputs)
        delay = config.delay_between_iterations / 1000
        last_output: Any = None
        completed = 0
        failed = 0
        stop_met = False

        for index in range(total):
            if index > 0 and delay > 0:
                await asyncio.sleep(delay)

            iteration = index + 1
            ctx.write(config.iteration_variable, iteration)
            body_scope = ctx.scope.child()
            body_seed = seed
            if items is not None:
                body_seed = items[index]
                body_scope.write("item", items[index])

            await ctx.events.emit_loop_iteration(
                ctx.run_id, node.id, iteration, {"maxIterations": total}
            )
            logger.info(f"   🔁 {node.id} iteration {iteration}/{total}")

            try:
                region: RegionResult = await ctx.run_region(
                    LOOP_BODY_PORT, body_scope, body_seed, ctx.iteration + (index,)
                )
            except NodeExecutionFailed as e:
                if not config.continue_on_error:
                    raise
                failed += 1
                logger.warning(
                    f"   ↷ {node.id} iteration {iteration} failed at '{e.node_id}', continuing"
                )
                continue

            body_scope.commit()
            last_output = region.output
            completed += 1

            if self._should_stop(config, last_output, ctx, node.id):
                stop_met = True
                break

        details = {
            "iterations": completed + failed,
            "completedIterations": completed,
            "failedIterations": failed,
            "stopConditionMet": stop_met,
        }
        logger.info(f"   ✓ {node.id} finished after {details['iterations']} iteration(s)")
        return Branch(LOOP_COMPLETE_PORT, last_output, details)

    @staticmethod
    def _should_stop(config: LoopConfig, output: Any, ctx: NodeContext, node_id: str) -> bool:
        if config.loop_type == LoopType.UNTIL_MASTERY:
            score = numeric_score(output)
            return score is not None and score >= config.mastery_threshold
        if config.loop_type == LoopType.UNTIL_CONDITION:
            namespace = ctx.namespace({"input": output})
            namespace["output"] = output
            return evaluate_condition(config.exit_condition, namespace, node_id)
        return False

    @staticmethod
    def _resolve_items(
        config: LoopConfig, inputs: dict[str, Any], ctx: NodeContext
    ) -> list[Any] | None:
        if config.items is not None:
            return list(config.items)
        if config.items_variable:
            value = ctx.namespace(inputs).get(config.items_variable)
            return list(value) if isinstance(value, list | tuple) else None
        value = primary_input(inputs)
        if isinstance(value, list | tuple):
            return list(value)
        if isinstance(value, dict) and isinstance(value.get("items"), list | tuple):
            return list(value["items"])
        return None


class ParallelExecutor:
    """
    Runs every branch region concurrently and merges the results.

    Each branch gets its own child scope; only the branches that take part in
    the merge have their bindings committed. A branch that outlives
    ``timeoutSeconds`` is cancelled and counts as failed.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        config: ParallelConfig = _config_or_fail(ctx, ParallelConfig)
        strategy = config.merge_strategy
        seed = primary_input(inputs)

        tasks: dict[asyncio.Task, int] = {}
        for index, port in enumerate(config.ports, start=1):
            task = asyncio.create_task(
                self._run_branch(ctx, port, ctx.scope.child(), seed, config.timeout_seconds),
                name=f"{ctx.run_id}:{node.id}:{port}",
            )
            tasks[task] = index

        successes: dict[int, RegionResult] = {}
        failures: dict[int, BaseException] = {}
        pending = set(tasks)

        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=tasks.__getitem__):
                    index = tasks[task]
                    try:
                        successes[index] = task.result()
                    except TimeoutError:
                        failures[index] = ExecutionError(
                            f"Branch {index} of '{node.id}' timed out after {config.timeout_seconds}s",
                            node_id=node.id,
                        )
                        logger.warning(f"   ⏱ {node.id} branch {index} timed out")
                    except NodeExecutionFailed as e:
                        failures[index] = e
                        logger.warning(f"   ✗ {node.id} branch {index} failed at '{e.node_id}'")
                    except Exception as e:
                        logger.exception(f"Branch {index} of '{node.id}' raised")
                        failures[index] = ExecutionError(
                            f"Branch {index} of '{node.id}' raised {type(e).__name__}: {e}",
                            node_id=node.id,
                        )

                if strategy == MergeStrategy.FIRST_COMPLETE:
                    if successes:
                        break
                    continue

                if failures and not config.continue_on_branch_failure:
                    first = failures[min(failures)]
                    if isinstance(first, NodeExecutionFailed):
                        raise first
                    return Fail(first)
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if not successes:
            return Fail(
                ExecutionError(f"All {config.branches} branches of '{node.id}' failed", node_id=node.id)
            )

        details = {
            "strategy": str(strategy),
            "succeeded": sorted(successes),
            "failed": sorted(failures),
            "cancelled": sorted(tasks[t] for t in pending),
        }

        if strategy == MergeStrategy.FIRST_COMPLETE:
            winner = min(successes)
            successes[winner].scope.commit()
            details["winner"] = winner
            return Output(successes[winner].output, details)

        for index in sorted(successes):
            successes[index].scope.commit()

        if strategy == MergeStrategy.COMBINE_OUTPUTS:
            return Output({index: successes[index].output for index in sorted(successes)}, details)

        if strategy == MergeStrategy.BEST_RESULT:
            best = self._best_branch(successes, config.comparator_key)
            details["winner"] = best
            return Output(successes[best].output, details)

        return Output([successes[index].output for index in sorted(successes)], details)

    @staticmethod
    async def _run_branch(
        ctx: NodeContext, port: str, scope: Any, seed: Any, timeout: float | None
    ) -> RegionResult:
        if timeout is None:
            return await ctx.run_region(port, scope, seed)
        return await asyncio.wait_for(ctx.run_region(port, scope, seed), timeout=timeout)

    @staticmethod
    def _best_branch(successes: dict[int, RegionResult], comparator_key: str | None) -> int:
        """Highest ``comparator_key`` wins (earliest branch on ties); else the first success."""
        best: int | None = None
        best_score: float | None = None
        if comparator_key:
            for index in sorted(successes):
                output = successes[index].output
                score = output.get(comparator_key) if isinstance(output, dict) else None
                if isinstance(score, bool) or not isinstance(score, Number):
                    continue
                if best_score is None or score > best_score:
                    best, best_score = index, float(score)
        return best if best is not None else min(successes)
