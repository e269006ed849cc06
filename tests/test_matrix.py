"""Tests for matrix expansion."""

import pytest

from cimatrix.dsl import axis, job, sh
from cimatrix.errors import ConfigurationError
from cimatrix.matrix import env_name, expand, job_count, substitute
from cimatrix.model import AxisSet, JobKind, ManifestCommit

RUST = axis("rust", ["stable", "beta", "nightly", "1.39.0"], env="RUSTUP_TOOLCHAIN")
OS = axis("os", ["ubuntu-18.04"])


def template():
    return job(
        "Build+test",
        sh("Install ${{ matrix.rust }} toolchain", "rustup toolchain install ${{ matrix.rust }}"),
        sh("cargo build", "cargo build"),
    )


class TestExpand:
    """Cross-product expansion."""

    def test_count_is_product_of_axis_sizes(self):
        specs = expand([RUST, OS], template())
        assert len(specs) == 4 == job_count([RUST, OS])

        wide = [axis("a", ["1", "2", "3"]), axis("b", ["x", "y"])]
        assert len(expand(wide, template())) == 6

    def test_order_is_deterministic(self):
        axes = [axis("a", ["1", "2"]), axis("b", ["x", "y"])]
        ids = [s.id for s in expand(axes, job("t", sh("s", "true")))]
        assert ids == ["t (1, x)", "t (1, y)", "t (2, x)", "t (2, y)"]
        assert ids == [s.id for s in expand(axes, job("t", sh("s", "true")))]

    def test_every_combination_appears_once(self):
        specs = expand([RUST, OS], template())
        combos = [dict(s.matrix) for s in specs]
        assert [c["rust"] for c in combos] == ["stable", "beta", "nightly", "1.39.0"]
        assert all(c["os"] == "ubuntu-18.04" for c in combos)
        assert len({s.id for s in specs}) == 4

    def test_environment_binding(self):
        spec = expand([RUST, OS], template())[3]
        assert spec.env["MATRIX_RUST"] == "1.39.0"
        assert spec.env["MATRIX_OS"] == "ubuntu-18.04"
        assert spec.env["RUSTUP_TOOLCHAIN"] == "1.39.0"
        assert spec.kind is JobKind.MATRIX

    def test_references_substituted(self):
        spec = expand([RUST, OS], template())[1]
        assert spec.steps[0].name == "Install beta toolchain"
        assert spec.steps[0].run == "rustup toolchain install beta"
        assert spec.steps[1].run == "cargo build"

    def test_manifest_commit_attached(self):
        commit = ManifestCommit(path="src/Cargo.toml", text="", digest="abc")
        assert all(s.manifest is commit for s in expand([RUST], template(), manifest=commit))

    def test_no_axes_gives_single_job(self):
        specs = expand([], job("solo", sh("s", "true")))
        assert [s.id for s in specs] == ["solo"]


class TestValidation:
    """Malformed axes are configuration errors."""

    def test_empty_axis(self):
        with pytest.raises(ConfigurationError, match="has no values"):
            expand([AxisSet("rust", ())], template())

    def test_duplicate_axis(self):
        with pytest.raises(ConfigurationError, match="duplicate matrix axis"):
            expand([axis("rust", ["stable"]), axis("rust", ["beta"])], template())

    def test_duplicate_values(self):
        with pytest.raises(ConfigurationError, match="repeats values"):
            expand([axis("rust", ["stable", "stable"])], template())

    def test_unknown_reference(self):
        bad = job("t", sh("s", "echo ${{ matrix.compiler }}"))
        with pytest.raises(ConfigurationError, match="unknown matrix axis 'compiler'"):
            expand([RUST], bad)


class TestHelpers:

    def test_env_name(self):
        assert env_name("rust") == "MATRIX_RUST"
        assert env_name("target-os") == "MATRIX_TARGET_OS"

    def test_substitute_whitespace_variants(self):
        assert substitute("${{matrix.os}}/${{  matrix.os  }}", {"os": "linux"}) == "linux/linux"


class TestFrozenSpecs:
    """Expanded specs are shared between worker threads and must not change."""

    def test_env_is_read_only(self):
        spec = expand([RUST, OS], template())[0]
        with pytest.raises(TypeError):
            spec.env["RUSTUP_TOOLCHAIN"] = "beta"
        with pytest.raises(TypeError):
            spec.steps[0].env["X"] = "y"

    def test_caller_dict_is_copied(self):
        env = {"RUST_BACKTRACE": "1"}
        step = sh("t", "cargo test", env=env)
        env["RUST_BACKTRACE"] = "0"
        assert step.env == {"RUST_BACKTRACE": "1"}
