"""Provider and merge clients against httpx.MockTransport."""

import json

import httpx
import pytest

from reelflow.errors import MergeError, ProviderError, SubmissionError, ValidationError
from reelflow.services.generation_client import GenerationClient, mime_type_for, video_model
from reelflow.services.merge_client import MergeClient


class Recorder:
    """MockTransport handler returning canned responses and keeping requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    def body(self, n: int = -1) -> dict:
        return json.loads(self.requests[n].content)


def _client(recorder: Recorder) -> GenerationClient:
    return GenerationClient(
        "https://provider.test",
        "secret-key",
        image_model="img-model",
        script_model="script-model",
        transport=httpx.MockTransport(recorder),
    )


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_returns_job_handle():
    recorder = Recorder(httpx.Response(200, json={"code": 200, "data": {"id": "pred-1"}}))
    client = _client(recorder)

    result = await client.text_to_image("a red fox", aspect_ratio="1:1", size="2K")
    await client.close()

    assert (result.job_handle, result.output_url) == ("pred-1", None)
    request = recorder.requests[0]
    assert request.url.path == "/api/v3/google/img-model/text-to-image"
    assert request.headers["Authorization"] == "Bearer secret-key"
    assert recorder.body() == {"prompt": "a red fox", "aspect_ratio": "1:1", "size": "2K"}


@pytest.mark.asyncio
async def test_submit_returns_inline_output():
    recorder = Recorder(httpx.Response(200, json={"data": {"outputs": ["https://cdn.test/fox.png"]}}))
    client = _client(recorder)

    result = await client.image_to_edit("a red fox", ["https://cdn.test/ref.png"])
    await client.close()

    assert result.output_url == "https://cdn.test/fox.png"
    assert recorder.requests[0].url.path == "/api/v3/google/img-model/image-edit"
    assert recorder.body()["image"] == ["https://cdn.test/ref.png"]


@pytest.mark.parametrize(
    "response, message",
    [
        (httpx.Response(400, json={"error": {"message": "Prompt blocked"}}), "Prompt blocked"),
        (httpx.Response(200, json={"code": 500, "message": "Quota exceeded"}), "Quota exceeded"),
        (httpx.Response(200, json={"code": 200, "data": {}}), "No task ID returned from API"),
        (httpx.Response(502, text="<html>Bad gateway</html>"), "Malformed response"),
    ],
)
@pytest.mark.asyncio
async def test_submit_errors(response, message):
    recorder = Recorder(response)
    client = _client(recorder)

    with pytest.raises(SubmissionError, match=message):
        await client.text_to_image("a red fox")
    await client.close()
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_image_to_video_last_frame_parameter():
    recorder = Recorder(
        httpx.Response(200, json={"data": {"id": "v-1"}}),
        httpx.Response(200, json={"data": {"id": "v-2"}}),
        httpx.Response(200, json={"data": {"id": "v-3"}}),
    )
    client = _client(recorder)

    await client.image_to_video("seedance", "walk", "https://cdn.test/a.png", "https://cdn.test/b.png")
    await client.image_to_video("hailuo", "walk", "https://cdn.test/a.png", "https://cdn.test/b.png")
    await client.image_to_video("wan", "walk", "https://cdn.test/a.png", "https://cdn.test/b.png")
    await client.close()

    seedance, hailuo, wan = (recorder.body(i) for i in range(3))
    assert seedance["last_image"] == "https://cdn.test/b.png"
    assert seedance["resolution"] == "720p"
    assert hailuo["end_image"] == "https://cdn.test/b.png"
    assert "last_image" not in wan and "end_image" not in wan
    assert wan["image"] == "https://cdn.test/a.png"
    assert recorder.requests[2].url.path == video_model("wan").path


def test_unknown_video_model():
    with pytest.raises(ValidationError):
        video_model("sora")


# ---------------------------------------------------------------------------
# Results and scripts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_job_result():
    recorder = Recorder(
        httpx.Response(200, json={"data": {"status": "completed", "outputs": ["https://cdn.test/v.mp4"]}}),
        httpx.Response(200, json={"data": {"status": "failed", "error": "Timeout on worker"}}),
        httpx.Response(500, json={}),
    )
    client = _client(recorder)

    done = await client.get_job_result("pred-1")
    failed = await client.get_job_result("pred-2")
    with pytest.raises(httpx.HTTPStatusError):
        await client.get_job_result("pred-3")
    await client.close()

    assert (done.status, done.output_url) == ("completed", "https://cdn.test/v.mp4")
    assert (failed.status, failed.error) == ("failed", "Timeout on worker")
    assert recorder.requests[0].url.path == "/api/v3/predictions/pred-1/result"


@pytest.mark.asyncio
async def test_generate_script():
    recorder = Recorder(
        httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": '{"scenes": []}'}]}}]})
    )
    client = _client(recorder)

    text = await client.generate_script("https://cdn.test/clip.mov", "Describe this")
    await client.close()

    assert text == '{"scenes": []}'
    request = recorder.requests[0]
    assert request.url.path == "/v1beta/models/script-model:generateContent"
    assert request.headers["Authorization"] == "secret-key"
    file_part = recorder.body()["contents"][0]["parts"][1]["file_data"]
    assert file_part == {"mime_type": "video/quicktime", "file_uri": "https://cdn.test/clip.mov"}


@pytest.mark.asyncio
async def test_generate_script_empty_response():
    recorder = Recorder(httpx.Response(200, json={"candidates": []}))
    client = _client(recorder)

    with pytest.raises(ProviderError, match="empty response"):
        await client.generate_script("https://cdn.test/clip.mp4", "Describe this")
    await client.close()


def test_mime_type_for():
    assert mime_type_for("https://cdn.test/a.WEBM?sig=1") == "video/webm"
    assert mime_type_for("https://cdn.test/stream") == "video/mp4"


# ---------------------------------------------------------------------------
# Merge client
# ---------------------------------------------------------------------------


def _merge_client(recorder: Recorder) -> MergeClient:
    return MergeClient("https://merge.test", transport=httpx.MockTransport(recorder))


@pytest.mark.asyncio
async def test_merge_success():
    recorder = Recorder(httpx.Response(200, json={"success": True, "videoUrl": "https://cdn.test/final.mp4"}))
    client = _merge_client(recorder)

    url = await client.merge(["https://cdn.test/0.mp4", "https://cdn.test/1.mp4"])
    await client.close()

    assert url == "https://cdn.test/final.mp4"
    assert recorder.requests[0].url.path == "/api/merge-videos"
    assert recorder.body() == {"videoUrls": ["https://cdn.test/0.mp4", "https://cdn.test/1.mp4"]}


@pytest.mark.asyncio
async def test_merge_failures():
    recorder = Recorder(
        httpx.Response(200, json={"success": False, "error": "Codec mismatch"}),
        httpx.Response(200, json={"success": True}),
    )
    client = _merge_client(recorder)

    with pytest.raises(MergeError, match="Codec mismatch"):
        await client.merge(["https://cdn.test/0.mp4"])
    with pytest.raises(MergeError, match="no video URL"):
        await client.merge(["https://cdn.test/0.mp4"])
    with pytest.raises(MergeError, match="No valid video URLs"):
        await client.merge([])
    await client.close()

    assert len(recorder.requests) == 2
