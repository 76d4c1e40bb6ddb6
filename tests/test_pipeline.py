import pytest

from zfs_installer.config import InstallConfig, ensure_defaults
from zfs_installer.context import ProvisioningContext
from zfs_installer.errors import ToolInvocationError
from zfs_installer.pipeline import run_pipeline
from zfs_installer.profiles import load_profile


class RecordingStep:
    def __init__(self, step_id, log, fail=False):
        self.step_id = step_id
        self.log = log
        self.fail = fail

    def run(self, ctx):
        if self.fail:
            raise ToolInvocationError(f"{self.step_id} failed", argv=["false"], returncode=1)
        ctx.register(f"undo {self.step_id}", lambda: self.log.append(self.step_id))


@pytest.fixture
def ctx(tmp_path):
    raw = ensure_defaults(
        {
            "disks": ["/dev/sda", "/dev/sdb", "/dev/sdc"],
            "hostname": "precision",
            "username": "me",
            "install_root": str(tmp_path / "target"),
        }
    )
    return ProvisioningContext(config=InstallConfig(raw=raw), profile=load_profile("raidz-mirror"))


def test_failure_at_stage_n_undoes_stages_before_it_in_reverse(ctx):
    log = []
    steps = [RecordingStep(s, log) for s in ("10_a", "20_b", "30_c")]
    steps.append(RecordingStep("40_d", log, fail=True))
    steps.append(RecordingStep("50_e", log))

    with pytest.raises(ToolInvocationError, match="40_d failed"):
        run_pipeline(ctx=ctx, steps=steps)

    assert log == ["30_c", "20_b", "10_a"]
    assert ctx.cleanup.executed_stages == ["30_c", "20_b", "10_a"]
    assert ctx.current_step == "40_d"


def test_success_commits_everything(ctx):
    log = []
    steps = [RecordingStep(s, log) for s in ("10_a", "20_b")]

    result = run_pipeline(ctx=ctx, steps=steps)

    assert result.ran_steps == ["10_a", "20_b"]
    assert result.executed_inverses == ["20_b", "10_a"]
    assert ctx.cleanup.outcome == "commit"
    assert ctx.current_step is None


def test_report_includes_cleanup(ctx):
    run_pipeline(ctx=ctx, steps=[RecordingStep("10_a", [])])
    report = ctx.report()
    assert report["profile"] == "raidz-mirror"
    assert report["cleanup"]["outcome"] == "commit"
    assert report["cleanup"]["executed"] == ["10_a"]
