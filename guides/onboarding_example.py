"""Example running a user onboarding workflow end to end.

Set ADXFLOW_DATABASE_URL=sqlite:///onboarding.db to keep history between runs.
"""

import asyncio
import logging

from adxflow import (
    ActivityExecutor,
    ActivityStep,
    OrchestrationClient,
    RetryPolicy,
    TenantContext,
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowVersionManager,
    get_repository,
    get_transport,
)
from adxflow.errors import TransientError, ValidationError

executor = ActivityExecutor()
attempts = {"send_welcome_email": 0}


@executor.register()
async def validate_email(ctx, payload):
    if "@" not in payload["email"]:
        raise ValidationError(f"invalid email {payload['email']}")
    return {"email": payload["email"].lower()}


@executor.register()
async def send_welcome_email(ctx, payload):
    attempts["send_welcome_email"] += 1
    if attempts["send_welcome_email"] < 3:
        raise TransientError("mail relay unavailable")
    return {"message_id": ctx.idempotency_key}


ONBOARDING = WorkflowDefinition(
    workflow_type="user_onboarding",
    version="1",
    steps=[
        ActivityStep(name="validate_email", activity="validate_email"),
        ActivityStep(
            name="send_welcome_email",
            activity="send_welcome_email",
            retry_policy=RetryPolicy.exponential(max_attempts=3, initial_backoff=0.1),
            input_builder=lambda ctx: ctx.outputs["validate_email"],
        ),
    ],
)


async def main():
    logging.basicConfig(level=logging.INFO)
    versions = WorkflowVersionManager()
    versions.register(ONBOARDING, default=True)

    engine = WorkflowEngine(
        versions, executor, get_repository(), transport=get_transport()
    )
    async with engine:
        tenant = TenantContext(tenant_id="acme", tenant_name="Acme")
        client = OrchestrationClient(engine, tenant)
        execution_id = await client.submit(
            "user_onboarding", input={"email": "New.User@example.com"}
        )
        outcome = await client.await_result(execution_id, timeout=10)
        print(outcome.model_dump_json(indent=2))


if __name__ == "__main__":
    asyncio.run(main())
