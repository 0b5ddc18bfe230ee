"""Tests for the Team Lead: board reconciliation, workers and the continuation loop."""

import asyncio

import pytest
from conftest import RoutedLLM, ScriptedLLM, call, reply

from crew_orchestrator.agents.continuation import BoardSnapshot, Phase, determine_phase
from crew_orchestrator.agents.llm import ToolInvocation
from crew_orchestrator.agents.team_lead import TeamLead, is_failure_report
from crew_orchestrator.agents.tools import DecisionCycle
from crew_orchestrator.bus.message_bus import new_message
from crew_orchestrator.core import registry
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core.agents import get_agent
from crew_orchestrator.core.tasks import BoardState
from crew_orchestrator.core.worktrees import list_worktree_records
from crew_orchestrator.db.models import AgentStatus, MessageType, TaskColumn, WorktreeStatus


@pytest.fixture
def coo_inbox(bus):
    received = []
    bus.subscribe("coo", received.append)
    return received


@pytest.fixture
def make_team_lead(db, bus, config, workspace):
    created = []

    def factory(llm=None):
        team_lead = TeamLead(
            db,
            bus,
            llm or ScriptedLLM(),
            config,
            system_prompt="You are the Team Lead of project demo.",
            parent_id="coo",
            project_id="demo",
            workspace=workspace,
        )
        created.append(team_lead)
        return team_lead

    yield factory
    for team_lead in created:
        team_lead.destroy()


async def shutdown(team_lead):
    team_lead.destroy()
    await asyncio.sleep(0)


def directive(team_lead, content="Build the app"):
    return new_message(
        MessageType.DIRECTIVE, content, from_agent_id="coo", to_agent_id=team_lead.id, project_id="demo"
    )


class BlockingLLM:
    def __init__(self):
        self.release = asyncio.Event()

    async def invoke(self, system_prompt, history, tools, model=None):
        await self.release.wait()
        return reply("Finished the work.")


class TestFailureReports:
    @pytest.mark.parametrize(
        "report",
        [
            "",
            "WORKER ERROR: Task produced no output",
            "exit code: 1\nnpm ERR!",
            "Build failed: missing dependency",
            "bash: ./run.sh: Permission denied",
            "VERIFICATION FAILED: 2 tests broken",
        ],
    )
    def test_failures(self, report):
        assert is_failure_report(report) is True

    @pytest.mark.parametrize(
        "report",
        ["Implemented the login page.", "VERIFICATION PASSED: 12 tests", "DEPLOYMENT SUCCEEDED on :3000"],
    )
    def test_successes(self, report):
        assert is_failure_report(report) is False

    @pytest.mark.parametrize(
        "entry_id, marker",
        [("builtin-tester", "VERIFICATION FAILED:"), ("builtin-deployer", "DEPLOYMENT FAILED:")],
    )
    def test_builtin_failure_markers_are_detected(self, db, entry_id, marker):
        entry = registry.get_entry(db, entry_id)
        assert f"'{marker}'" in entry.system_prompt
        assert is_failure_report(f"{marker} the server never came up") is True


class TestPhases:
    def _board(self, backlog=0, in_progress=0, done=0):
        return BoardState(backlog, in_progress, done, "")

    def test_order(self):
        assert determine_phase(self._board(), 0, False, False) == Phase.PLANNING
        assert determine_phase(self._board(backlog=1, in_progress=1), 0, False, False) == Phase.WORKING
        assert determine_phase(self._board(in_progress=1, done=1), 0, False, False) == Phase.AWAITING
        assert determine_phase(self._board(done=2), 1, False, False) == Phase.FINAL_ASSEMBLY
        assert determine_phase(self._board(done=2), 0, False, False) == Phase.VERIFICATION
        assert determine_phase(self._board(done=2), 0, True, False) == Phase.DEPLOYMENT
        assert determine_phase(self._board(done=2), 0, True, True) == Phase.REPORTING

    def test_snapshot_compares_counts(self):
        a = BoardSnapshot.of(self._board(backlog=1), 0)
        b = BoardSnapshot.of(self._board(backlog=1), 0)
        assert a == b
        assert a != BoardSnapshot.of(self._board(backlog=1), 1)


class TestUpdateKanbanTask:
    def test_not_found(self, make_team_lead):
        assert make_team_lead().update_kanban_task("ghost", title="x") == "Task not found: ghost"

    def test_same_column(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo")
        result = make_team_lead().update_kanban_task("work", column=TaskColumn.BACKLOG)
        assert result == "Task work is already in backlog. No change made."

    def test_done_cannot_reopen(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.DONE)
        result = make_team_lead().update_kanban_task("work", column=TaskColumn.BACKLOG)
        assert result.startswith("REJECTED")
        assert tasks_mod.get_task(db, "work").column == TaskColumn.DONE

    def test_in_progress_needs_live_worker(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo")
        result = make_team_lead().update_kanban_task(
            "work", column=TaskColumn.IN_PROGRESS, assignee_agent_id="worker-ghost"
        )
        assert result.startswith("REJECTED")
        assert "spawn_worker" in result
        assert tasks_mod.get_task(db, "work").column == TaskColumn.BACKLOG

    def test_back_to_backlog_requeues(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="w1")
        result = make_team_lead().update_kanban_task("work", column=TaskColumn.BACKLOG)
        assert result == "Task work updated: back in backlog (attempt 1)."
        task = tasks_mod.get_task(db, "work")
        assert task.assignee_agent_id is None
        assert task.retry_count == 1

    def test_back_to_backlog_exhausts_retries(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="w1")
        tasks_mod.update_task(db, "work", retry_count=2)
        result = make_team_lead().update_kanban_task("work", column=TaskColumn.BACKLOG)
        assert result == "Task work updated: retries exhausted, closed as FAILED."
        assert tasks_mod.get_task(db, "work").column == TaskColumn.DONE

    def test_plain_update(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo")
        result = make_team_lead().update_kanban_task("work", title="Better title", labels=["ui"])
        assert result == "Task work updated: [backlog] work: Better title"
        assert tasks_mod.get_task(db, "work").labels == ["ui"]

    @pytest.mark.asyncio
    async def test_through_tool(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.DONE)
        team_lead = make_team_lead()
        result = await team_lead.get_tools().execute(
            ToolInvocation("update_task", {"task_id": "work", "column": "in_progress"}), DecisionCycle()
        )
        assert result.startswith("REJECTED")
        bad = await team_lead.get_tools().execute(
            ToolInvocation("update_task", {"task_id": "work", "column": "review"}), DecisionCycle()
        )
        assert bad.startswith("Invalid arguments for update_task")


class TestEnsureTaskMoved:
    def test_success_completes(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="w1")
        assert make_team_lead().ensure_task_moved("work", "All implemented.") is True
        task = tasks_mod.get_task(db, "work")
        assert task.column == TaskColumn.DONE
        assert task.completion_report == "All implemented."

    def test_failure_requeues(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="w1")
        assert make_team_lead().ensure_task_moved("work", "WORKER ERROR: boom") is True
        assert tasks_mod.get_task(db, "work").column == TaskColumn.BACKLOG

    def test_not_in_progress_is_left_alone(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.DONE)
        assert make_team_lead().ensure_task_moved("work", "All implemented.") is False

    def test_orphans(self, db, make_team_lead):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="w-dead")
        assert [t.id for t in make_team_lead().get_orphaned_tasks()] == ["work"]


class TestWorkerReports:
    @pytest.mark.asyncio
    async def test_failed_report_returns_task_to_backlog(self, db, config, make_team_lead):
        config.max_concurrent_workers = 0
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="worker-x")
        llm = ScriptedLLM()
        team_lead = make_team_lead(llm)

        await team_lead.handle_worker_report(
            new_message(MessageType.REPORT, "WORKER ERROR: Task failed: boom", from_agent_id="worker-x", to_agent_id=team_lead.id)
        )

        task = tasks_mod.get_task(db, "work")
        assert task.column == TaskColumn.BACKLOG
        assert task.assignee_agent_id is None
        assert task.description.startswith("PREVIOUS ATTEMPT FAILED (attempt 1)")
        prompt = llm.calls[0]["history"][-1].content
        assert "[Worker worker-x report]" in prompt
        assert "moved back to backlog (attempt 1)" in prompt

    @pytest.mark.asyncio
    async def test_orphans_become_action_items(self, db, config, make_team_lead):
        config.max_concurrent_workers = 0
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="worker-x")
        tasks_mod.create_task(db, "Lost", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="worker-old")
        llm = ScriptedLLM()
        team_lead = make_team_lead(llm)

        await team_lead.handle_worker_report(
            new_message(MessageType.REPORT, "Implemented it.", from_agent_id="worker-x", to_agent_id=team_lead.id)
        )

        assert tasks_mod.get_task(db, "work").column == TaskColumn.DONE
        prompt = llm.calls[0]["history"][-1].content
        assert "ACTION REQUIRED:" in prompt
        assert "Task lost 'Lost'" in prompt
        assert "worker-old" in prompt

    @pytest.mark.asyncio
    async def test_late_report_leaves_reassigned_task_alone(self, db, make_team_lead):
        tasks_mod.create_task(db, "Task A", "demo")
        blocking = BlockingLLM()
        lead_llm = ScriptedLLM()
        team_lead = make_team_lead(RoutedLLM(**{"coder worker": blocking, "team lead": lead_llm}))

        team_lead.spawn_worker("builtin-coder", "first try", "task-a")
        (first,) = team_lead.workers
        team_lead.update_kanban_task("task-a", column="backlog")
        team_lead.spawn_worker("builtin-coder", "second try", "task-a")
        (second,) = set(team_lead.workers) - {first}

        await team_lead.handle_worker_report(
            new_message(
                MessageType.REPORT,
                "Implemented it.",
                from_agent_id=first,
                to_agent_id=team_lead.id,
                metadata={"task_id": "task-a"},
            )
        )

        task = tasks_mod.get_task(db, "task-a")
        assert task.column == TaskColumn.IN_PROGRESS
        assert task.assignee_agent_id == second
        assert list(team_lead.workers) == [second]
        statuses = {w.agent_id: w.status for w in list_worktree_records(db, "demo")}
        assert statuses == {first: WorktreeStatus.ABANDONED, second: WorktreeStatus.ACTIVE}
        prompt = lead_llm.calls[0]["history"][-1].content
        assert f"task task-a was reassigned to {second}; left unchanged." in prompt
        await shutdown(team_lead)


class TestSpawning:
    @pytest.mark.asyncio
    async def test_auto_spawn_picks_lowest_position(self, db, config, make_team_lead):
        config.max_concurrent_workers = 1
        tasks_mod.create_task(db, "First", "demo")
        tasks_mod.create_task(db, "Second", "demo")
        tasks_mod.create_task(db, "Urgent", "demo", position=0)
        team_lead = make_team_lead()

        assert team_lead.auto_spawn_ready_tasks() == ["urgent"]
        urgent = tasks_mod.get_task(db, "urgent")
        assert urgent.column == TaskColumn.IN_PROGRESS
        assert urgent.assignee_agent_id in team_lead.workers
        assert team_lead.idle_capacity() == 0
        assert team_lead.spawn_worker("builtin-coder", "more", "first").startswith("Cannot spawn")
        await shutdown(team_lead)

    @pytest.mark.asyncio
    async def test_labelled_task_uses_template_and_main_repo(self, db, workspace, make_team_lead):
        tasks_mod.create_task(db, "Verify", "demo", labels=["verification"])
        team_lead = make_team_lead()

        team_lead.auto_spawn_ready_tasks()

        (worker,) = team_lead.workers.values()
        assert worker.registry_entry_id == "builtin-tester"
        assert worker.workspace_path == str(workspace.repo_path("demo"))
        assert list_worktree_records(db, "demo") == []
        await shutdown(team_lead)

    @pytest.mark.asyncio
    async def test_non_code_template_gets_scratch_dir(self, db, workspace, make_team_lead):
        team_lead = make_team_lead()
        result = team_lead.spawn_worker("builtin-researcher", "Compare frameworks")
        assert result.startswith("Spawned worker")
        (worker,) = team_lead.workers.values()
        assert worker.workspace_path == str(workspace.agent_path("demo", worker.id))
        await shutdown(team_lead)

    @pytest.mark.asyncio
    async def test_spawn_refusals(self, db, make_team_lead):
        tasks_mod.create_task(db, "Finished", "demo", column=TaskColumn.DONE)
        team_lead = make_team_lead()
        assert team_lead.spawn_worker("builtin-nobody", "x").startswith("Registry entry not found")
        assert team_lead.spawn_worker("builtin-coder", "x", "ghost") == "Task not found: ghost"
        assert team_lead.spawn_worker("builtin-coder", "x", "finished") == "Task finished is already done."
        assert team_lead.workers == {}

    @pytest.mark.asyncio
    async def test_discard_worker_branch(self, db, make_team_lead):
        team_lead = make_team_lead()
        team_lead.worktrees.create_worktree("worker-old")
        tools = team_lead.get_tools()
        discard = ToolInvocation("discard_worker_branch", {"agent_id": "worker-old"})

        result = await tools.execute(discard, DecisionCycle())

        assert result == "Discarded the branch of worker-old."
        assert [w.status for w in list_worktree_records(db, "demo")] == [WorktreeStatus.ABANDONED]
        assert await tools.execute(discard, DecisionCycle()) == "No unmerged branch for worker-old."

    @pytest.mark.asyncio
    async def test_destroy_cleans_up(self, db, bus, make_team_lead):
        tasks_mod.create_task(db, "One", "demo")
        tasks_mod.create_task(db, "Two", "demo")
        team_lead = make_team_lead()
        team_lead.spawn_worker("builtin-coder", "do one", "one")
        team_lead.spawn_worker("builtin-coder", "do two", "two")
        worker_ids = list(team_lead.workers)

        refused = await team_lead.get_tools().execute(
            ToolInvocation("merge_worker_branch", {"agent_id": worker_ids[0]}), DecisionCycle()
        )
        assert "still running" in refused

        await shutdown(team_lead)

        assert team_lead.workers == {}
        assert list_worktree_records(db, "demo", WorktreeStatus.ACTIVE) == []
        assert {w.status for w in list_worktree_records(db, "demo")} == {WorktreeStatus.ABANDONED}
        for worker_id in worker_ids:
            assert get_agent(db, worker_id).status == AgentStatus.DONE
            assert bus.is_subscribed(worker_id) is False
        assert get_agent(db, team_lead.id).status == AgentStatus.DONE

    @pytest.mark.asyncio
    async def test_stop_worker_orphans_task(self, db, make_team_lead):
        tasks_mod.create_task(db, "One", "demo")
        team_lead = make_team_lead()
        team_lead.spawn_worker("builtin-coder", "do one", "one")
        (worker_id,) = team_lead.workers

        result = team_lead.stop_worker(worker_id, "wrong approach")

        assert "Task one is now orphaned" in result
        assert [t.id for t in team_lead.get_orphaned_tasks()] == ["one"]
        await shutdown(team_lead)


class TestStatusRequest:
    @pytest.mark.asyncio
    async def test_busy_worker_does_not_block(self, db, bus, config, make_team_lead):
        blocking = BlockingLLM()
        team_lead = make_team_lead(RoutedLLM(**{"team lead": ScriptedLLM(), "coder worker": blocking}))
        tasks_mod.create_task(db, "Slow", "demo")
        team_lead.spawn_worker("builtin-coder", "take your time", "slow")
        await asyncio.sleep(0.05)

        response = await bus.request(
            new_message(MessageType.STATUS_REQUEST, "status", from_agent_id="coo", to_agent_id=team_lead.id),
            timeout=2.0,
        )

        assert response is not None
        assert "no response (may be busy)" in response.content
        assert "Board: 1 task(s)" in response.content

        blocking.release.set()
        await asyncio.wait_for(team_lead.wait_idle(), 30)
        assert tasks_mod.get_task(db, "slow").column == TaskColumn.DONE


class TestContinuation:
    @pytest.mark.asyncio
    async def test_stale_state_stops_loop(self, config, coo_inbox, make_team_lead):
        llm = ScriptedLLM(default=reply("", call("list_tasks")))
        team_lead = make_team_lead(llm)

        await team_lead.handle_directive(directive(team_lead))

        assert len(llm.calls) == config.max_tool_rounds
        assert [m.metadata for m in coo_inbox] == [{"kind": "progress"}]

    @pytest.mark.asyncio
    async def test_cycle_cap(self, db, config, make_team_lead):
        llm = ScriptedLLM(default=reply("", call("create_task", title="More work")))
        team_lead = make_team_lead(llm)

        await team_lead.handle_directive(directive(team_lead))

        thinks = 1 + config.max_continuation_cycles
        assert len(llm.calls) == thinks * config.max_tool_rounds
        assert tasks_mod.board_state(db, "demo").backlog == thinks * config.max_tool_rounds

    @pytest.mark.asyncio
    async def test_full_project_reaches_all_done(self, db, workspace, coo_inbox, make_team_lead):
        def merge_active(system_prompt, history, tools):
            (record,) = list_worktree_records(db, "demo", WorktreeStatus.ACTIVE)
            return reply("", call("merge_worker_branch", agent_id=record.agent_id))

        lead_llm = ScriptedLLM(
            [
                reply(
                    "",
                    call("create_task", title="Build API", description="REST endpoints"),
                    call("spawn_worker", registry_entry_id="builtin-coder", task="Build the API", task_id="build-api"),
                ),
                reply("Planned and started."),
                merge_active,
                reply("Merged."),
                reply("Verification passed."),
                reply("Deployed."),
                reply("", call("report_to_coo", content="All done: API built, verified and deployed.")),
                reply("Reported."),
            ]
        )
        coder_llm = ScriptedLLM(
            [
                reply("", call("write_file", path="api.py", content="def handler():\n    return 'ok'\n")),
                reply("Implemented the API in api.py."),
            ]
        )
        tester_llm = ScriptedLLM([reply("VERIFICATION PASSED: 3 tests green")])
        deployer_llm = ScriptedLLM([reply("DEPLOYMENT SUCCEEDED on port 3000")])
        team_lead = make_team_lead(
            RoutedLLM(
                **{
                    "team lead": lead_llm,
                    "coder worker": coder_llm,
                    "tester worker": tester_llm,
                    "deployer worker": deployer_llm,
                }
            )
        )

        team_lead.enqueue(directive(team_lead))
        await asyncio.wait_for(team_lead.wait_idle(), 60)

        board = tasks_mod.board_state(db, "demo")
        assert board.all_done is True
        assert board.done == 3
        labels = sorted(l for t in tasks_mod.list_tasks(db, "demo") for l in t.labels)
        assert labels == ["deployment", "verification"]

        assert (workspace.repo_path("demo") / "api.py").exists()
        assert {w.status for w in list_worktree_records(db, "demo")} == {WorktreeStatus.MERGED}
        assert team_lead.workers == {}
        assert team_lead.final_report_sent is True

        reporting_prompt = lead_llm.calls[6]["history"][-1].content
        assert reporting_prompt.startswith("[Continuation: reporting]")
        assert "VERIFICATION PASSED: 3 tests green" in reporting_prompt

        assert [(m.content, m.metadata) for m in coo_inbox] == [
            ("Planned and started.", {"kind": "progress"}),
            ("All done: API built, verified and deployed.", {"kind": "final"}),
        ]

    @pytest.mark.asyncio
    async def test_one_failing_worker(self, db, coo_inbox, make_team_lead):
        def coder(system_prompt, history, tools):
            if "Broken feature" in history[0].content:
                return reply("Build failed: missing dependency")
            return reply("Feature implemented.")

        lead_llm = ScriptedLLM(
            [
                reply(
                    "",
                    call("create_task", title="Good feature"),
                    call("create_task", title="Broken feature"),
                    call("spawn_worker", registry_entry_id="builtin-coder", task="Build it", task_id="good-feature"),
                    call("spawn_worker", registry_entry_id="builtin-coder", task="Build it", task_id="broken-feature"),
                ),
                reply("Started two workers."),
            ]
        )
        team_lead = make_team_lead(
            RoutedLLM(**{"team lead": lead_llm, "coder worker": ScriptedLLM(default=None, script=[coder] * 10)})
        )

        team_lead.enqueue(directive(team_lead))
        await asyncio.wait_for(team_lead.wait_idle(), 60)

        good = tasks_mod.get_task(db, "good-feature")
        assert good.column == TaskColumn.DONE
        assert good.completion_report == "Feature implemented."

        broken = tasks_mod.get_task(db, "broken-feature")
        assert broken.column == TaskColumn.DONE
        assert broken.retry_count == 3
        assert broken.completion_report.startswith("FAILED after 3 attempt(s)")
        events = tasks_mod.get_task_events(db, "broken-feature")
        assert sum(1 for e in events if e.event_type == "assignee_changed" and e.new_value is None) == 3

        statuses = [w.status for w in list_worktree_records(db, "demo")]
        assert statuses.count(WorktreeStatus.ABANDONED) == 3
        assert statuses.count(WorktreeStatus.ACTIVE) == 1
        assert team_lead.workers == {}
        assert coo_inbox[0].content == "Started two workers."
