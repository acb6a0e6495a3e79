#!/usr/bin/env python3
import aws_cdk as cdk
from order_intake_stack import OrderIntakeStack

app = cdk.App()

env_name = app.node.try_get_context("env_name") or "dev"

OrderIntakeStack(
    app,
    f"OrderIntake-{env_name}",
    env_name=env_name,
    env=cdk.Environment(
        account=app.node.try_get_context("account"),
        region=app.node.try_get_context("region") or "us-east-1",
    ),
)

app.synth()
