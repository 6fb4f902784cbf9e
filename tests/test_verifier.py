"""
Tests for post-configuration verification.
"""

import pytest

from lxc_manager.core.pct_host import ContainerStatus
from lxc_manager.core.verifier import Verdict, Verifier


@pytest.fixture
def verifier(fake_host, settings):
    return Verifier(fake_host, settings, sleep=lambda s: None)


@pytest.mark.unit
class TestVerifier:

    def test_success(self, fake_host, verifier):
        fake_host.add_container("101", status=ContainerStatus.RUNNING)

        result = verifier.verify("101")

        assert result.verdict == Verdict.SUCCEEDED
        assert result.device_visible and result.probe_passed
        assert not result.remediation_attempted
        assert result.history == ["restarting", "device_check", "functional_probe", "succeeded"]
        assert fake_host.lifecycle("101") == ["stop", "start"]

    def test_stopped_container_is_started(self, fake_host, verifier):
        fake_host.add_container("101")

        assert verifier.verify("101").succeeded
        assert fake_host.lifecycle("101") == ["start"]

    def test_device_missing_fails_without_remediation(self, fake_host, verifier, settings):
        fake_host.add_container("101", status=ContainerStatus.RUNNING, device_visible=False)

        result = verifier.verify("101")

        assert result.verdict == Verdict.FAILED
        assert not result.remediation_attempted
        assert settings.primary_device in result.message
        assert not any(argv[:1] == ["nvidia-smi"] for argv in fake_host.execs("101"))

    def test_remediation_success(self, fake_host, verifier):
        container = fake_host.add_container("101", status=ContainerStatus.RUNNING, probe_ok=False)

        result = verifier.verify("101")

        assert result.succeeded
        assert result.remediation_attempted
        assert container.remediated
        assert result.history == [
            "restarting", "device_check", "functional_probe",
            "remediating", "functional_probe", "succeeded",
        ]
        probes = [argv for argv in fake_host.execs("101") if argv[:1] == ["nvidia-smi"]]
        assert len(probes) == 2

    def test_remediation_failure(self, fake_host, verifier):
        fake_host.add_container(
            "101", status=ContainerStatus.RUNNING,
            probe_ok=False, probe_ok_after_remediation=False,
        )

        result = verifier.verify("101")

        assert result.verdict == Verdict.FAILED
        assert result.remediation_attempted
        assert result.history[-1] == "failed"
        assert result.history.count("remediating") == 1

    def test_install_failure_reported(self, fake_host, verifier):
        fake_host.add_container("101", status=ContainerStatus.RUNNING, probe_ok=False)
        fake_host.fail_on("install")

        result = verifier.verify("101")

        assert not result.succeeded
        assert "installing the management library failed" in result.message

    def test_probe_timeout_counts_as_failure(self, fake_host, verifier, settings):
        fake_host.add_container("101", status=ContainerStatus.RUNNING, probe_times_out=True)

        result = verifier.verify("101")

        assert not result.succeeded
        assert result.remediation_attempted
        timeouts = [c[3] for c in fake_host.calls if c[0] == "exec" and c[2][:1] == ["nvidia-smi"]]
        assert timeouts == [settings.probe_timeout, settings.probe_timeout]

    def test_restart_failure(self, fake_host, verifier):
        fake_host.add_container("101", status=ContainerStatus.RUNNING)
        fake_host.start_failures.add("101")

        result = verifier.verify("101")

        assert result.verdict == Verdict.FAILED
        assert result.history == ["restarting", "failed"]
        assert "restart failed" in result.message

    def test_configuration_untouched(self, fake_host, verifier, base_config):
        fake_host.add_container("101", base_config, status=ContainerStatus.RUNNING, probe_ok=False)

        verifier.verify("101")

        assert fake_host.config_path("101").read_text() == base_config

    def test_device_polling_until_visible(self, fake_host, settings):
        container = fake_host.add_container("101", status=ContainerStatus.RUNNING, device_visible=False)
        settings.device_wait_timeout = 5.0
        now = [0.0]

        def sleep(seconds):
            now[0] += seconds
            if now[0] >= 2.0:
                container.device_visible = True

        verifier = Verifier(fake_host, settings, sleep=sleep, clock=lambda: now[0])
        settings.device_poll_interval = 1.0

        assert verifier.wait_for_device("101")
        assert now[0] == 2.0

    def test_device_polling_gives_up(self, fake_host, settings):
        fake_host.add_container("101", status=ContainerStatus.RUNNING, device_visible=False)
        settings.device_wait_timeout = 3.0
        settings.device_poll_interval = 1.0
        now = [0.0]

        def sleep(seconds):
            now[0] += seconds

        verifier = Verifier(fake_host, settings, sleep=sleep, clock=lambda: now[0])

        assert not verifier.wait_for_device("101")
        assert now[0] == 3.0

    def test_result_to_dict(self, fake_host, verifier):
        fake_host.add_container("101", status=ContainerStatus.RUNNING)
        data = verifier.verify("101").to_dict()
        assert data["verdict"] == "succeeded"
        assert data["ctid"] == "101"
