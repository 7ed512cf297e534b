from fixrez.ats import extract_job_keywords, match_level, score_resume_against_job


class TestKeywordScoring:
    def test_keywords_skip_short_and_stop_words(self):
        keywords = extract_job_keywords("Backend Engineer", "We want an engineer with Python and Docker experience.")
        assert keywords[:2] == ["backend", "engineer"]
        assert "python" in keywords
        assert "docker" in keywords
        assert "with" not in keywords
        assert "and" not in keywords
        assert keywords.count("engineer") == 1

    def test_keywords_capped_at_fifty(self):
        description = " ".join(f"skill{index:03d}" for index in range(80))
        assert len(extract_job_keywords("", description)) == 50

    def test_score_and_match_lists(self):
        result = score_resume_against_job(
            "Python developer who ships Docker images",
            "Python Docker Kubernetes Terraform",
        )
        assert result["score"] == 50
        assert result["keywords_found"] == ["python", "docker"]
        assert result["keywords_missing"] == ["kubernetes", "terraform"]
        assert result["match_level"] == "Moderate Match"
        assert result["feedback"] == "2/4 job keywords found in resume"

    def test_empty_job_description_scores_zero(self):
        assert score_resume_against_job("anything", "a an the")["score"] == 0

    def test_match_levels(self):
        assert match_level(71) == "Strong Match"
        assert match_level(70) == "Moderate Match"
        assert match_level(41) == "Moderate Match"
        assert match_level(40) == "Weak Match"


class TestATSRoute:
    def test_score_route(self, client):
        response = client.post(
            "/api/ats/score",
            json={"resume_text": "Python and SQL", "job_description": "Python Tableau", "job_title": ""},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["score"] == 50
        assert data["next_steps"]

    def test_inputs_required(self, client):
        response = client.post("/api/ats/score", json={"resume_text": "Python"})
        assert response.status_code == 400
