from pathlib import Path

from aws_cdk import (
    Stack,
    Duration,
    CfnOutput,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_ecs_patterns as ecs_patterns,
    aws_logs as logs,
    aws_iam as iam,
    aws_sns as sns,
    aws_sqs as sqs,
    aws_sns_subscriptions as subs,
    aws_ecr_assets as ecr_assets,
)
from constructs import Construct

IMAGE_EXCLUDES = [
    "infra/cdk/cdk.out",
    "**/cdk.out",
    "**/.venv",
    "**/__pycache__",
    "**/*.pyc",
    "**/.pytest_cache",
    ".git",
]


class OrderIntakeStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, env_name: str = "dev", **kwargs):
        super().__init__(scope, construct_id, **kwargs)

        name_prefix = f"order-intake-{env_name}"
        repo_root = Path(__file__).resolve().parents[2]  # infra/cdk -> infra -> repo root

        vpc = ec2.Vpc(self, "Vpc", max_azs=2, nat_gateways=1)
        cluster = ecs.Cluster(self, "Cluster", vpc=vpc, cluster_name=f"{name_prefix}-cluster")

        order_events_topic = sns.Topic(self, "OrderEventsTopic", topic_name=f"{name_prefix}-order-events")

        # Consumers parse the SNS notification wrapper, so delivery is not raw.
        notifications_dlq = sqs.Queue(
            self,
            "NotificationsDLQ",
            queue_name=f"{name_prefix}-notifications-dlq",
            retention_period=Duration.days(14),
        )
        notifications_q = sqs.Queue(
            self,
            "NotificationsQueue",
            queue_name=f"{name_prefix}-notifications",
            visibility_timeout=Duration.seconds(30),
            dead_letter_queue=sqs.DeadLetterQueue(queue=notifications_dlq, max_receive_count=5),
        )
        order_events_topic.add_subscription(subs.SqsSubscription(notifications_q, raw_message_delivery=False))

        log_group = logs.LogGroup(
            self,
            "OrderIntakeLogGroup",
            log_group_name=f"/ecs/{name_prefix}",
            retention=logs.RetentionDays.TWO_WEEKS,
        )

        intake_role = iam.Role(self, "OrderIntakeTaskRole", assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"))
        order_events_topic.grant_publish(intake_role)

        worker_role = iam.Role(self, "NotificationsTaskRole", assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"))
        notifications_q.grant_consume_messages(worker_role)

        image_asset = ecr_assets.DockerImageAsset(
            self,
            "OrderIntakeImage",
            directory=str(repo_root),
            file="Dockerfile",
            exclude=IMAGE_EXCLUDES,
        )
        image = ecs.ContainerImage.from_docker_image_asset(image_asset)
        platform = ecs.RuntimePlatform(
            cpu_architecture=ecs.CpuArchitecture.ARM64,
            operating_system_family=ecs.OperatingSystemFamily.LINUX,
        )

        intake_task = ecs.FargateTaskDefinition(
            self,
            "OrderIntakeTaskDef",
            cpu=512,
            memory_limit_mib=1024,
            task_role=intake_role,
            runtime_platform=platform,
        )
        intake_container = intake_task.add_container(
            "OrderIntakeContainer",
            image=image,
            command=["python", "-m", "services.order_intake.app.main"],
            environment={
                "PORT": "8080",
                "MESSAGE_BACKEND": "sns",
                "ORDER_EVENTS_TOPIC_ARN": order_events_topic.topic_arn,
                "AWS_REGION": Stack.of(self).region,
            },
            logging=ecs.LogDriver.aws_logs(stream_prefix="intake", log_group=log_group),
        )
        intake_container.add_port_mappings(ecs.PortMapping(container_port=8080))

        intake = ecs_patterns.ApplicationLoadBalancedFargateService(
            self,
            "OrderIntakeService",
            cluster=cluster,
            public_load_balancer=True,
            desired_count=1,
            task_definition=intake_task,
            health_check_grace_period=Duration.seconds(30),
        )
        intake.target_group.configure_health_check(path="/health")

        worker_task = ecs.FargateTaskDefinition(
            self,
            "NotificationsTaskDef",
            cpu=256,
            memory_limit_mib=512,
            task_role=worker_role,
            runtime_platform=platform,
        )
        worker_task.add_container(
            "NotificationsContainer",
            image=image,
            command=["python", "-m", "services.notifications.app.worker"],
            environment={
                "SQS_QUEUE_URL": notifications_q.queue_url,
                "AWS_REGION": Stack.of(self).region,
            },
            logging=ecs.LogDriver.aws_logs(stream_prefix="notifications", log_group=log_group),
        )
        ecs.FargateService(self, "NotificationsService", cluster=cluster, task_definition=worker_task, desired_count=1)

        CfnOutput(self, "AlbDnsName", value=intake.load_balancer.load_balancer_dns_name)
        CfnOutput(self, "OrderEventsTopicArn", value=order_events_topic.topic_arn)
        CfnOutput(self, "NotificationsQueueUrl", value=notifications_q.queue_url)
        CfnOutput(self, "NotificationsDlqUrl", value=notifications_dlq.queue_url)
        CfnOutput(self, "OrderIntakeImageUri", value=image_asset.image_uri)
