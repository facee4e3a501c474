"""
Deploy stage.

Rolls a built image out to an externally provisioned ECS service, gates
success on replica counts and load-balancer target health, and rolls the
service back to its previous task definition when the rollout does not
become healthy.

Author: Delivery Pipeline Team
"""

import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from delivery_pipeline.config.settings import ConcurrencyPolicy, DeploySettings
from delivery_pipeline.exceptions import (
    ConcurrentDeployRejected,
    DeployFailed,
    ValidationError,
)
from delivery_pipeline.schemas.artifacts import ImageDescriptor
from delivery_pipeline.schemas.deploy import DeployResult, ServiceTarget
from delivery_pipeline.services.cancellation import CancellationToken
from delivery_pipeline.services.image_definitions import read_image_definitions
from delivery_pipeline.utils.aws_clients import AWSClientFactory
from delivery_pipeline.utils.logging import get_logger

logger = get_logger(__name__)

# Keys returned by DescribeTaskDefinition that RegisterTaskDefinition rejects
READ_ONLY_TASK_DEFINITION_KEYS = (
    'taskDefinitionArn',
    'revision',
    'status',
    'requiresAttributes',
    'compatibilities',
    'registeredAt',
    'registeredBy',
    'deregisteredAt',
)

UNSETTLED_TARGET_STATES = ('initial', 'unhealthy', 'unavailable')

# Longest a queued deploy waits on the lock before re-checking cancellation
QUEUE_POLL_SECONDS = 1.0

StageLog = Callable[[str], None]


class DeployLockRegistry:
    """
    Serializes deploys per service target.

    With the ``reject`` policy a second deploy to a busy target fails at
    once; with ``queue`` it waits up to ``queue_timeout`` seconds first.
    """

    def __init__(self, policy: ConcurrencyPolicy = ConcurrencyPolicy.REJECT, queue_timeout: float = 300.0):
        self.policy = ConcurrencyPolicy(policy)
        self.queue_timeout = queue_timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def is_locked(self, target: ServiceTarget) -> bool:
        return self._lock_for(target.key).locked()

    @contextmanager
    def hold(self, target: ServiceTarget, cancellation: Optional[CancellationToken] = None) -> Iterator[None]:
        """
        Hold the deploy lock for a target.

        Raises:
            ConcurrentDeployRejected: If the lock cannot be acquired under the policy
            RunCancelled: If the token is cancelled while queued
        """
        lock = self._lock_for(target.key)
        if self.policy == ConcurrencyPolicy.QUEUE:
            acquired = self._acquire_queued(lock, cancellation)
        else:
            acquired = lock.acquire(blocking=False)

        if not acquired:
            logger.warning("Deploy rejected, target busy", extra={
                'target': target.key,
                'policy': self.policy.value,
            })
            raise ConcurrentDeployRejected(
                f"Another deploy to {target.key} is in progress",
                target=target.key,
                details={'policy': self.policy.value},
            )
        try:
            yield
        finally:
            lock.release()

    def _acquire_queued(self, lock: threading.Lock, cancellation: Optional[CancellationToken]) -> bool:
        deadline = time.monotonic() + self.queue_timeout
        while True:
            if cancellation is not None:
                cancellation.raise_if_cancelled("deploy")
            remaining = deadline - time.monotonic()
            if lock.acquire(timeout=max(0.0, min(QUEUE_POLL_SECONDS, remaining))):
                return True
            if remaining <= QUEUE_POLL_SECONDS:
                return False


class _RolloutNotHealthy(Exception):
    """Internal signal that the rollout must be rolled back."""

    def __init__(self, reason: str, cancelled: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.cancelled = cancelled


class DeployService:
    """
    Updates a running ECS service to a new image.

    ``sleep`` and ``clock`` are injectable so polling can be driven by tests.

    Example:
        >>> deployer = DeployService(aws, DeployLockRegistry(), DeploySettings())
        >>> result = deployer.deploy_from_artifact(path, target)
        >>> result.task_definition_arn
        'arn:aws:ecs:us-east-1:123456789012:task-definition/echo:8'
    """

    def __init__(
        self,
        aws: AWSClientFactory,
        locks: Optional[DeployLockRegistry] = None,
        settings: Optional[DeploySettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = settings or DeploySettings()
        self.aws = aws
        self.locks = locks or DeployLockRegistry(settings.concurrency_policy, settings.queue_timeout)
        self.timeout_seconds = settings.timeout_seconds
        self.poll_interval = settings.poll_interval
        self.rollback_timeout = settings.rollback_timeout
        self._sleep = sleep
        self._clock = clock

    def deploy_from_artifact(
        self,
        artifact_path: Path,
        target: ServiceTarget,
        cancellation: Optional[CancellationToken] = None,
        log: Optional[StageLog] = None,
    ) -> DeployResult:
        """Read the image descriptor file and deploy it."""
        descriptor = read_image_definitions(artifact_path)
        return self.deploy(descriptor, target, cancellation=cancellation, log=log)

    def deploy(
        self,
        descriptor: ImageDescriptor,
        target: ServiceTarget,
        cancellation: Optional[CancellationToken] = None,
        log: Optional[StageLog] = None,
    ) -> DeployResult:
        """
        Roll the descriptor's image out to the target service.

        Args:
            descriptor: Image to run and the container that runs it
            target: Service to update
            cancellation: Optional token; after the update it triggers a rollback
            log: Optional callback receiving progress lines

        Returns:
            DeployResult describing the healthy rollout

        Raises:
            ValidationError: If the descriptor names a different container
            ConcurrentDeployRejected: If the target is busy
            DeployFailed: If the rollout failed; the service was rolled back first
            RunCancelled: If cancelled before the service was updated
        """
        if descriptor.name != target.container_name:
            raise ValidationError(
                f"Descriptor container '{descriptor.name}' does not match "
                f"service container '{target.container_name}'",
                details={'target': target.key},
            )

        token = cancellation or CancellationToken()
        emit = log or (lambda message: None)

        with self.locks.hold(target, cancellation=token):
            token.raise_if_cancelled("deploy")
            return self._deploy_locked(descriptor, target, token, emit)

    def _deploy_locked(
        self,
        descriptor: ImageDescriptor,
        target: ServiceTarget,
        token: CancellationToken,
        emit: StageLog,
    ) -> DeployResult:
        start_time = self._clock()
        ecs = self.aws.ecs()

        try:
            service = self._describe_service(target)
            previous_arn = service['taskDefinition']
            task_definition = ecs.describe_task_definition(taskDefinition=previous_arn)['taskDefinition']
            new_arn = self._register_revision(task_definition, target.container_name, descriptor.image_uri)
            emit(f"Registered task definition {new_arn}")

            ecs.update_service(
                cluster=target.cluster,
                service=target.service,
                taskDefinition=new_arn,
                forceNewDeployment=True,
                deploymentConfiguration=self._deployment_configuration(service),
            )
        except (ClientError, BotoCoreError) as e:
            raise DeployFailed(
                f"Unable to update service {target.key}: {e}",
                rolled_back=False,
                rollback_outcome="not needed, service unchanged",
                details={'target': target.key},
            ) from e

        logger.info("Service update started", extra={
            'target': target.key,
            'image_uri': descriptor.image_uri,
            'task_definition': new_arn,
            'previous_task_definition': previous_arn,
        })
        emit(f"Updated {target.key} from {previous_arn} to {new_arn}")

        try:
            service, healthy_targets = self._wait_for_rollout(target, new_arn, start_time, token)
        except _RolloutNotHealthy as failure:
            emit(f"Rollout not healthy: {failure.reason}; rolling back to {previous_arn}")
            rolled_back, outcome = self._rollback(target, previous_arn)
            emit(f"Rollback: {outcome}")
            raise DeployFailed(
                f"Deploy to {target.key} failed: {failure.reason}",
                rolled_back=rolled_back,
                rollback_outcome=outcome,
                details={
                    'target': target.key,
                    'task_definition': new_arn,
                    'previous_task_definition': previous_arn,
                    'cancelled': failure.cancelled,
                },
            )

        result = DeployResult(
            cluster=target.cluster,
            service=target.service,
            image_uri=descriptor.image_uri,
            task_definition_arn=new_arn,
            previous_task_definition_arn=previous_arn,
            desired_count=service.get('desiredCount', 0),
            running_count=service.get('runningCount', 0),
            healthy_targets=healthy_targets,
            duration_seconds=round(self._clock() - start_time, 3),
        )
        logger.info("Deploy completed", extra={'target': target.key, 'task_definition': new_arn})
        emit(f"Rollout healthy: {result.running_count}/{result.desired_count} tasks running")
        return result

    def _describe_service(self, target: ServiceTarget) -> Dict[str, Any]:
        response = self.aws.ecs().describe_services(cluster=target.cluster, services=[target.service])
        services = response.get('services', [])
        if not services or services[0].get('status') == 'INACTIVE':
            raise DeployFailed(
                f"Service {target.key} not found",
                rolled_back=False,
                rollback_outcome="not needed, service unchanged",
                details={'failures': response.get('failures', [])},
            )
        return services[0]

    def _register_revision(self, task_definition: Dict[str, Any], container_name: str, image_uri: str) -> str:
        definition = {
            key: value for key, value in task_definition.items()
            if key not in READ_ONLY_TASK_DEFINITION_KEYS
        }

        containers = [dict(container) for container in definition.get('containerDefinitions', [])]
        matched = False
        for container in containers:
            if container.get('name') == container_name:
                container['image'] = image_uri
                matched = True
        if not matched:
            raise ValidationError(
                f"Task definition {task_definition.get('family')} has no container '{container_name}'",
                details={'containers': [c.get('name') for c in containers]},
            )
        definition['containerDefinitions'] = containers

        response = self.aws.ecs().register_task_definition(**definition)
        return response['taskDefinition']['taskDefinitionArn']

    @staticmethod
    def _deployment_configuration(service: Dict[str, Any]) -> Dict[str, Any]:
        configuration = dict(service.get('deploymentConfiguration') or {})
        configuration['deploymentCircuitBreaker'] = {'enable': True, 'rollback': True}
        return configuration

    def _wait_for_rollout(
        self,
        target: ServiceTarget,
        task_definition_arn: str,
        start_time: float,
        token: CancellationToken,
    ) -> Tuple[Dict[str, Any], Optional[int]]:
        while True:
            if token.cancelled:
                raise _RolloutNotHealthy(token.reason or "cancelled", cancelled=True)

            try:
                service = self._describe_service(target)
                deployment = self._find_deployment(service, task_definition_arn)
                if deployment is None:
                    raise _RolloutNotHealthy(
                        "deployment was replaced, circuit breaker rolled back the service"
                    )
                if deployment.get('rolloutState') == 'FAILED':
                    raise _RolloutNotHealthy(
                        deployment.get('rolloutStateReason') or "rollout failed"
                    )

                if self._replicas_ready(service, deployment):
                    healthy_targets = self._healthy_target_count(target, service.get('desiredCount', 0))
                    if target.target_group_arn is None or healthy_targets is not None:
                        return service, healthy_targets
            except (ClientError, BotoCoreError) as e:
                logger.warning("Rollout status check failed", extra={'target': target.key, 'error': str(e)})
            except DeployFailed as e:
                raise _RolloutNotHealthy(e.message) from e

            if self._clock() - start_time >= self.timeout_seconds:
                raise _RolloutNotHealthy(f"not healthy after {self.timeout_seconds}s")
            self._sleep(self.poll_interval)

    @staticmethod
    def _find_deployment(service: Dict[str, Any], task_definition_arn: str) -> Optional[Dict[str, Any]]:
        for deployment in service.get('deployments', []):
            if deployment.get('taskDefinition') == task_definition_arn:
                return deployment
        return None

    @staticmethod
    def _replicas_ready(service: Dict[str, Any], deployment: Dict[str, Any]) -> bool:
        desired = deployment.get('desiredCount', service.get('desiredCount', 0))
        if deployment.get('runningCount', 0) < desired or deployment.get('pendingCount', 0) > 0:
            return False
        rollout_state = deployment.get('rolloutState')
        if rollout_state is None:
            return len(service.get('deployments', [])) == 1
        return rollout_state == 'COMPLETED'

    def _healthy_target_count(self, target: ServiceTarget, desired: int) -> Optional[int]:
        """Return the healthy target count once the target group has settled, else None."""
        if target.target_group_arn is None:
            return None

        response = self.aws.elbv2().describe_target_health(TargetGroupArn=target.target_group_arn)
        states = [
            description.get('TargetHealth', {}).get('State')
            for description in response.get('TargetHealthDescriptions', [])
        ]
        healthy = states.count('healthy')
        if healthy < desired or any(state in UNSETTLED_TARGET_STATES for state in states):
            return None
        return healthy

    def _rollback(self, target: ServiceTarget, previous_arn: str) -> Tuple[bool, str]:
        """Point the service back at its previous task definition and wait for stability."""
        ecs = self.aws.ecs()
        try:
            ecs.update_service(
                cluster=target.cluster,
                service=target.service,
                taskDefinition=previous_arn,
                forceNewDeployment=True,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Rollback update failed", extra={'target': target.key, 'error': str(e)})
            return False, f"rollback update failed: {e}"

        delay = max(1, int(self.poll_interval))
        try:
            ecs.get_waiter('services_stable').wait(
                cluster=target.cluster,
                services=[target.service],
                WaiterConfig={'Delay': delay, 'MaxAttempts': max(1, int(self.rollback_timeout // delay))},
            )
        except WaiterError as e:
            logger.error("Rollback did not stabilize", extra={'target': target.key, 'error': str(e)})
            return False, f"rolled back to {previous_arn} but service did not stabilize"

        logger.info("Rollback completed", extra={'target': target.key, 'task_definition': previous_arn})
        return True, f"rolled back to {previous_arn}"
