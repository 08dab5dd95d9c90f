import asyncio

from typer.testing import CliRunner

from adxflow.cli import app
from adxflow.contracts import ExecutionStatus, StepError, StepStatus, TenantContext
from adxflow.errors import ErrorKind
from adxflow.persistence import SQLiteExecutionRepository, StepRecord, WorkflowExecution


def _seed(db_path) -> tuple[str, str]:
    async def seed():
        repo = SQLiteExecutionRepository(db_path)
        await repo.open()
        running = WorkflowExecution(
            execution_id="exec-running",
            workflow_type="user_onboarding",
            version="1.0.0",
            tenant_id="acme",
            tenant_context=TenantContext(tenant_id="acme"),
            status=ExecutionStatus.RUNNING,
            current_step_index=1,
            resume_point="step:1",
        )
        failed = WorkflowExecution(
            execution_id="exec-failed",
            workflow_type="user_onboarding",
            version="1.0.0",
            tenant_id="globex",
            tenant_context=TenantContext(tenant_id="globex"),
            status=ExecutionStatus.FAILED,
        )
        await repo.create_execution(running)
        await repo.create_execution(failed)
        await repo.append_step(
            StepRecord(
                execution_id="exec-running",
                sequence=1,
                step_name="send_welcome_email",
                step_index=1,
                status=StepStatus.RETRYING,
                last_error=StepError(kind=ErrorKind.TIMEOUT, message="mail relay slow"),
            )
        )
        await repo.close()
        return running.execution_id, failed.execution_id

    return asyncio.run(seed())


def _env(tmp_path, monkeypatch):
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("ADXFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("ADXFLOW_DATABASE_URL", f"sqlite://{db_path}")
    return db_path


def test_execution_list_shows_all_and_filters_by_tenant(tmp_path, monkeypatch):
    running, failed = _seed(_env(tmp_path, monkeypatch))
    runner = CliRunner()

    result = runner.invoke(app, ["execution", "list"])
    assert result.exit_code == 0, result.output
    assert running in result.output
    assert failed in result.output

    result = runner.invoke(app, ["execution", "list", "--tenant", "acme"])
    assert result.exit_code == 0, result.output
    assert running in result.output
    assert failed not in result.output

    result = runner.invoke(app, ["execution", "list", "--status", "failed"])
    assert result.exit_code == 0, result.output
    assert failed in result.output
    assert running not in result.output


def test_execution_list_empty(tmp_path, monkeypatch):
    _env(tmp_path, monkeypatch)
    result = CliRunner().invoke(app, ["execution", "list"])
    assert result.exit_code == 0
    assert "No executions found" in result.output


def test_execution_show_details_and_missing(tmp_path, monkeypatch):
    running, _ = _seed(_env(tmp_path, monkeypatch))
    runner = CliRunner()

    result = runner.invoke(app, ["execution", "show", running])
    assert result.exit_code == 0, result.output
    assert "send_welcome_email" in result.output
    assert "retrying" in result.output
    assert "timeout: mail relay slow" in result.output
    assert "Resume point: step:1" in result.output

    result = runner.invoke(app, ["execution", "show", "does-not-exist"])
    assert result.exit_code == 1
    assert "not found" in result.output
