"""Text optimization and LLM resume optimization routes."""

import json

from fixrez import config, optimizer

RESUME = "Jane Doe\nData analyst with Python and SQL experience building dashboards."
JOB = "Senior Data Analyst. Requires Python, SQL, Tableau and stakeholder communication."

RESUME_JSON = {
    "header": {"name": "Jane Doe", "contact": "Toronto, ON • jane@example.com"},
    "summary": "Senior data analyst skilled in Python, SQL and Tableau with strong stakeholder communication.",
    "experience": [
        {
            "company": "Acme",
            "location": "Toronto, ON",
            "dates": "Jan 2020 - Present",
            "title": "Data Analyst",
            "bullets": ["Built Tableau dashboards backed by SQL and Python"],
        }
    ],
    "education": [{"school": "UofT", "location": "Toronto, ON", "dates": "2014 - 2018", "degree": "B.Sc."}],
    "additional": {"technical_skills": "Python, SQL, Tableau"},
}


class ProviderRateLimitError(Exception):
    status_code = 429


class APIConnectionError(Exception):
    pass


class TestTextOptimize:
    def test_requires_session(self, client):
        response = client.post("/api/optimize", json={"text": "hello"})
        assert response.status_code == 401

    def test_unverified_user_forbidden(self, client, unverified_user):
        response = client.post("/api/optimize", json={"text": "hello"}, headers=unverified_user.headers)
        assert response.status_code == 403

    def test_seo_optimization_for_verified_user(self, client, verified_user):
        response = client.post(
            "/api/optimize",
            json={"text": "A good and great product.", "type": "seo"},
            headers=verified_user.headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert "excellent" in data["optimized_text"]
        assert "exceptional" in data["optimized_text"]
        assert data["optimized_text"].startswith("## Overview")
        assert 10 <= data["score_improvement"] <= 39
        assert data["type"] == "seo"

        stats = client.get("/api/user/dashboard-stats", headers=verified_user.headers).json()
        assert stats["total_optimizations"] == 1
        assert stats["successful_optimizations"] == 1

    def test_default_type_is_seo(self, client, verified_user):
        response = client.post("/api/optimize", json={"text": "nice work"}, headers=verified_user.headers)
        assert response.json()["type"] == "seo"

    def test_invalid_type(self, client, verified_user):
        response = client.post("/api/optimize", json={"text": "hello", "type": "poetry"}, headers=verified_user.headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid optimization type"

    def test_text_required(self, client, verified_user):
        response = client.post("/api/optimize", json={"text": ""}, headers=verified_user.headers)
        assert response.status_code == 400

    def test_text_too_long(self, client, verified_user):
        response = client.post("/api/optimize", json={"text": "a" * 10_001}, headers=verified_user.headers)
        assert response.status_code == 400
        assert "too long" in response.json()["error"]


class TestResumeOptimize:
    def payload(self, **overrides):
        body = {"resume_text": RESUME, "job_description": JOB, "job_title": "Data Analyst", "filename": "jane.pdf"}
        body.update(overrides)
        return body

    def test_unverified_user_forbidden(self, client, unverified_user):
        response = client.post("/api/optimize/resume", json=self.payload(), headers=unverified_user.headers)
        assert response.status_code == 403

    def test_missing_inputs(self, client, verified_user):
        response = client.post(
            "/api/optimize/resume",
            json=self.payload(job_description=""),
            headers=verified_user.headers,
        )
        assert response.status_code == 400

    def test_not_configured_returns_503(self, client, verified_user):
        response = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)
        assert response.status_code == 503

    def test_successful_optimization_is_recorded(self, client, verified_user, fake_llm):
        fake = fake_llm("Here you go:\n```json\n" + json.dumps(RESUME_JSON) + "\n```")
        response = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["data"]["header"]["name"] == "Jane Doe"
        assert data["model"] == "test/model-a"
        assert data["ats"]["after"] >= data["ats"]["before"]
        assert data["ats"]["improvement"] == data["ats"]["after"] - data["ats"]["before"]

        call = fake.completions.calls[0]
        assert call["messages"][0]["content"] == optimizer.SYSTEM_PROMPT
        assert call["messages"][1]["content"].startswith("Resume:\n")

        detail = client.get(
            f"/api/user/optimizations/{data['optimization_id']}",
            headers=verified_user.headers,
        ).json()["optimization"]
        assert detail["status"] == "completed"
        assert detail["optimization_type"] == "resume"
        assert detail["filename"] == "jane.pdf"
        assert "Tableau" in detail["optimized_text"]

    def test_custom_prompt_is_used(self, client, verified_user, fake_llm):
        fake = fake_llm(json.dumps(RESUME_JSON))
        client.post(
            "/api/optimize/resume",
            json=self.payload(prompt="Rewrite this resume please"),
            headers=verified_user.headers,
        )
        assert fake.completions.calls[0]["messages"][1]["content"] == "Rewrite this resume please"

    def test_empty_reply_retries_with_truncated_prompt(self, client, verified_user, fake_llm):
        fake = fake_llm("", json.dumps(RESUME_JSON))
        response = client.post(
            "/api/optimize/resume",
            json=self.payload(resume_text="r" * 5000, prompt="custom"),
            headers=verified_user.headers,
        )

        assert response.status_code == 200
        retry_prompt = fake.completions.calls[1]["messages"][1]["content"]
        assert retry_prompt.startswith("Resume:\n" + "r" * 3000 + "\n\nJob Description:")

    def test_unparseable_reply_returns_502_and_records_failure(self, client, verified_user, fake_llm):
        fake_llm("I cannot help with that.")
        response = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)

        assert response.status_code == 502
        assert response.json()["attempted_models"] == ["test/model-a"]
        history = client.get("/api/user/optimizations", headers=verified_user.headers).json()["optimizations"]
        assert history[0]["status"] == "failed"

    def test_scalar_bullets_in_reply_are_ignored(self, client, verified_user, fake_llm):
        fake_llm(json.dumps({"summary": "Python analyst", "experience": [{"title": "Analyst", "bullets": 5}]}))
        response = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)

        assert response.status_code == 200, response.text
        detail = client.get(
            f"/api/user/optimizations/{response.json()['optimization_id']}",
            headers=verified_user.headers,
        ).json()["optimization"]
        assert detail["status"] == "completed"
        assert detail["optimized_text"] == "SUMMARY\nPython analyst\n\nEXPERIENCE\nAnalyst"

    def test_fallback_model_used_after_failure(self, client, verified_user, fake_llm, monkeypatch):
        monkeypatch.setattr(config, "LLM_FALLBACK_MODELS", ["test/model-b"])
        fake = fake_llm("no json here", json.dumps(RESUME_JSON))
        response = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)

        assert response.status_code == 200
        assert response.json()["model"] == "test/model-b"
        assert [call["model"] for call in fake.completions.calls] == ["test/model-a", "test/model-b"]

    def test_transient_errors_are_retried(self, client, verified_user, fake_llm, monkeypatch):
        monkeypatch.setattr(optimizer.time, "sleep", lambda seconds: None)
        fake = fake_llm(APIConnectionError("reset"), json.dumps(RESUME_JSON))
        response = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)

        assert response.status_code == 200
        assert len(fake.completions.calls) == 2

    def test_provider_429_starts_cooldown(self, client, verified_user, fake_llm):
        fake_llm(ProviderRateLimitError("slow down"))
        first = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)

        assert first.status_code == 429
        assert first.json()["cooldown_until"]

        second = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)
        assert second.status_code == 429
        assert "cooldown" in second.json()["details"].lower()

    def test_minimum_spacing_between_calls(self, client, verified_user, fake_llm, monkeypatch):
        monkeypatch.setattr(config, "AI_MIN_SPACING_SECONDS", 30)
        fake_llm(json.dumps(RESUME_JSON), json.dumps(RESUME_JSON))
        assert client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers).status_code == 200

        response = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)
        assert response.status_code == 429
        assert response.json()["error"] == "Too frequent"

    def test_dev_mock_skips_provider(self, client, verified_user, monkeypatch):
        monkeypatch.setattr(config, "DEV_AI_MOCK", True)
        response = client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers)

        assert response.status_code == 200
        assert response.json()["model"] == "mock"
        assert response.json()["warning"]

    def test_per_ip_rate_limit(self, client, verified_user, monkeypatch):
        monkeypatch.setattr(config, "RATE_MAX", 2)
        monkeypatch.setattr(config, "DEV_AI_MOCK", True)
        codes = [
            client.post("/api/optimize/resume", json=self.payload(), headers=verified_user.headers).status_code
            for _ in range(3)
        ]
        assert codes == [200, 200, 429]

    def test_status_snapshot(self, client):
        response = client.get("/api/optimize/status")
        assert response.status_code == 200
        data = response.json()
        assert data["model"] == "test/model-a"
        assert data["active"] == 0
        assert data["cooldown_until"] is None
