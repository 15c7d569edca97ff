from Lesson_Pipeline.utils.errors import PipelineBaseError, ProblemDetail


def test_problem_detail_drops_empty_fields():
    problem = ProblemDetail(title="Error", status=400)
    payload = problem.model_dump()
    assert payload == {"title": "Error", "status": 400, "type": "about:blank"}


def test_pipeline_error_wraps_problem():
    error = PipelineBaseError("Lesson not found", status=404, extra={"lesson_id": "l-1"})
    assert error.message == "Lesson not found"
    assert error.problem.status == 404
    assert error.problem.model_dump()["extra"] == {"lesson_id": "l-1"}
