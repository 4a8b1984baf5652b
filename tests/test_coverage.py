"""Tests for OAS loading and coverage accounting."""

import io
import json
from pathlib import Path

import pytest

from apiplan.coverage import Coverage, NullCoverage, load_oas, normalize_path
from apiplan.errors import ApiPlanError
from apiplan.expectations import ExpectOK

PETS_OAS = """
openapi: 3.0.0
info: {title: pets, version: "1"}
paths:
  /api/pets:
    get:
      responses: {"200": {description: ok}}
    post:
      responses: {"201": {description: created}, default: {description: error}}
  /api/pets/{petId}:
    parameters: []
    delete:
      responses: {"204": {description: gone}}
  /api/categories:
    get:
      responses: {"200": {description: ok}}
"""


# ── Loading ──


class TestLoadOas:
    def test_yaml_text(self):
        table = load_oas(PETS_OAS)
        assert set(table.paths) == {"/api/pets", "/api/pets/{petId}", "/api/categories"}
        assert table.paths["/api/pets"]["POST"] == [201, "default"]
        assert table.method_count() == 4

    def test_json_bytes(self):
        doc = {"paths": {"/api": {"get": {"responses": {"200": {}}}}}}
        table = load_oas(json.dumps(doc).encode())
        assert table.paths == {"/api": {"GET": [200]}}

    def test_stream_and_path(self, tmp_path):
        path = tmp_path / "oas.yaml"
        path.write_text(PETS_OAS)
        assert len(load_oas(Path(path)).paths) == 3
        assert len(load_oas(io.StringIO(PETS_OAS)).paths) == 3

    def test_unreadable(self):
        with pytest.raises(ApiPlanError, match="unable to read OAS"):
            load_oas("{not json")


def test_normalize_path():
    assert normalize_path("/api/pets/{petId}") == "/api/pets/{}"
    assert normalize_path("api//pets/") == "/api/pets"


# ── Collecting ──


class TestCoverage:
    def test_records_by_endpoint_and_method(self):
        cov = Coverage()
        exp = ExpectOK()
        cov.report_met("/api/pets", "GET", None, exp)
        cov.report_unmet("/api/pets", "POST", None, exp, ValueError("bad"))
        cov.report_timing("/api/pets", "GET", None, 5_000_000)
        assert len(cov.met) == 1
        assert len(cov.endpoints["/api/pets"].methods["POST"].unmet) == 1
        assert cov.has_failures()
        assert len(cov.timings) == 1

    def test_status_buckets(self):
        cov = Coverage()
        for status in (200, 201, 404, 500, 503):
            cov.report_status("/x", "GET", status)
        assert cov.status_buckets() == {"2xx": 2, "3xx": 0, "4xx": 1, "5xx": 2}

    def test_spec_required(self):
        with pytest.raises(ApiPlanError, match="spec not supplied"):
            Coverage().spec_coverage()

    def test_partial_coverage(self):
        cov = Coverage()
        cov.load_spec(PETS_OAS)
        cov.report_timing("/api/pets", "GET", None, 1)
        cov.report_timing("/api/pets", "POST", None, 1)
        cov.report_timing("/api/pets/{id}", "DELETE", None, 1)
        cov.report_timing("/api/pets", "PATCH", None, 1)
        cov.report_timing("/api/health", "GET", None, 1)

        spec = cov.spec_coverage()
        assert set(spec.covered_paths) == {"/api/pets", "/api/pets/{petId}"}
        assert set(spec.non_covered_paths) == {"/api/categories"}
        assert set(spec.unknown_paths) == {"/api/health"}
        assert spec.unknown() == [("/api/health", "GET"), ("/api/pets", "PATCH")]
        assert [str(u.error) for u in spec.unknown_unmet()] == [
            "GET /api/health is not declared in the OAS",
            "PATCH /api/pets is not declared in the OAS",
        ]
        assert cov.paths_covered() == (3, 2, 2 / 3)
        assert cov.methods_covered() == (4, 3, 3 / 4)

    def test_null_coverage_tracks_failure_only(self):
        cov = NullCoverage()
        cov.report_met("/a", "GET", None, ExpectOK())
        assert not cov.has_failures()
        cov.report_failure("/a", "GET", None, ValueError("x"))
        assert cov.has_failures()
