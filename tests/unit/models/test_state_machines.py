"""Unit tests for the build and deployment state machines."""

from __future__ import annotations

import pytest

from clouddeck.models.build import BuildStatus, can_transition_build
from clouddeck.models.deployment import (
    CANCELLABLE_STATES,
    DeploymentStatus,
    can_transition_deployment,
)


class TestBuildTransitions:
    """Build statuses follow the pipeline order."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (BuildStatus.PENDING, BuildStatus.CLONING),
            (BuildStatus.CLONING, BuildStatus.INSTALLING),
            (BuildStatus.INSTALLING, BuildStatus.BUILDING),
            (BuildStatus.BUILDING, BuildStatus.PACKAGING),
            (BuildStatus.PACKAGING, BuildStatus.SUCCESS),
        ],
    )
    def test_forward_steps_allowed(
        self, current: BuildStatus, target: BuildStatus
    ) -> None:
        """Each state advances to the next pipeline state."""
        assert can_transition_build(current, target)

    def test_skipping_steps_rejected(self) -> None:
        """A build cannot jump ahead in the pipeline."""
        assert not can_transition_build(BuildStatus.PENDING, BuildStatus.BUILDING)
        assert not can_transition_build(BuildStatus.CLONING, BuildStatus.SUCCESS)

    def test_backward_steps_rejected(self) -> None:
        """A build never moves backwards."""
        assert not can_transition_build(BuildStatus.BUILDING, BuildStatus.CLONING)

    @pytest.mark.parametrize(
        "current",
        [
            BuildStatus.PENDING,
            BuildStatus.CLONING,
            BuildStatus.INSTALLING,
            BuildStatus.BUILDING,
            BuildStatus.PACKAGING,
        ],
    )
    def test_any_running_state_can_fail_or_cancel(self, current: BuildStatus) -> None:
        """Failure and cancellation are reachable from every active state."""
        assert can_transition_build(current, BuildStatus.FAILED)
        assert can_transition_build(current, BuildStatus.CANCELLED)

    @pytest.mark.parametrize(
        "terminal", [BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.CANCELLED]
    )
    def test_terminal_states_are_final(self, terminal: BuildStatus) -> None:
        """Nothing leaves a terminal state."""
        assert terminal.is_terminal
        for target in BuildStatus:
            assert not can_transition_build(terminal, target)


class TestDeploymentTransitions:
    """Deployment statuses follow the lifecycle graph."""

    def test_standard_path(self) -> None:
        """pending -> building -> deploying -> running."""
        assert can_transition_deployment(
            DeploymentStatus.PENDING, DeploymentStatus.BUILDING
        )
        assert can_transition_deployment(
            DeploymentStatus.BUILDING, DeploymentStatus.DEPLOYING
        )
        assert can_transition_deployment(
            DeploymentStatus.DEPLOYING, DeploymentStatus.RUNNING
        )

    def test_promotion_skips_building(self) -> None:
        """Promotions go straight from pending to deploying."""
        assert can_transition_deployment(
            DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING
        )

    def test_pending_cannot_be_running(self) -> None:
        """A deployment must be deployed before it runs."""
        assert not can_transition_deployment(
            DeploymentStatus.PENDING, DeploymentStatus.RUNNING
        )

    @pytest.mark.parametrize(
        "terminal",
        [
            DeploymentStatus.RUNNING,
            DeploymentStatus.FAILED,
            DeploymentStatus.ROLLED_BACK,
            DeploymentStatus.CANCELLED,
        ],
    )
    def test_terminal_states_are_final(self, terminal: DeploymentStatus) -> None:
        """A finished deployment never changes status."""
        assert terminal.is_terminal
        for target in DeploymentStatus:
            assert not can_transition_deployment(terminal, target)

    def test_cancellable_states(self) -> None:
        """Only unfinished deployments can be cancelled."""
        assert CANCELLABLE_STATES == {
            DeploymentStatus.PENDING,
            DeploymentStatus.BUILDING,
            DeploymentStatus.DEPLOYING,
        }
        for status in CANCELLABLE_STATES:
            assert can_transition_deployment(status, DeploymentStatus.CANCELLED)
