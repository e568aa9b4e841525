import os
import base64
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set

import httpx

from models import SoundParameters
from soundlineage.errors import SynthesisFailure

logger = logging.getLogger(__name__)

API_KEY_ENV = {
    "elevenlabs": "ELEVENLABS_API_KEY",
    "stability": "STABILITY_API_KEY",
    "replicate": "REPLICATE_API_KEY",
    "fal": "FAL_API_KEY",
    "openai": "OPENAI_API_KEY",
    "suno": "SUNO_API_KEY",
}

ELEVENLABS_URL = "https://api.elevenlabs.io/v1/sound-generation"
STABILITY_URL = "https://api.stability.ai/v2beta/stable-audio/text-to-audio"
REPLICATE_URL = "https://api.replicate.com/v1/predictions"
REPLICATE_MUSICGEN_VERSION = "671ac645ce5e552cc63a54a2bbff63fcf798043055d2dac5fc9e36a837eedcfb"
FAL_URL = "https://fal.run/fal-ai/stable-audio-25/text-to-audio"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"
SUNO_BASE_URL = "https://api.sunoapi.org/api/v1"

MIME_BY_FORMAT = {
    "mp3": "audio/mpeg",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "opus": "audio/opus",
    "pcm16": "audio/wav",
    "wav": "audio/wav",
}


@dataclass
class SynthesisResult:
    audio_url: str
    provenance_id: Optional[str] = None


def _api_key(engine_id: str) -> Optional[str]:
    env = API_KEY_ENV.get(engine_id)
    return os.environ.get(env) if env else None


def _data_url(mime: str, audio: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(audio).decode('ascii')}"


def _content_id(audio: bytes) -> str:
    return "sha256:" + hashlib.sha256(audio).hexdigest()


def _target_length(parameters: SoundParameters, low: float, high: float) -> float:
    return max(low, min(high, parameters.length_seconds))


def build_music_prompt(prompt: str, parameters: SoundParameters, target_length: float) -> str:
    """Prompt for music-oriented engines: musical context, tempo lock and fill instructions."""
    context = []
    if parameters.bpm:
        context.append(f"{parameters.bpm} BPM")
    if parameters.key and parameters.key != "Atonal / FX":
        context.append(f"in {parameters.key}")
    if parameters.mood_tags:
        context.append(f"mood: {', '.join(parameters.mood_tags)}")
    context.append(f"duration ~{target_length:g}s")

    tempo_line = (
        f"Lock groove tightly to {parameters.bpm} BPM with consistent percussion/transients."
        if parameters.bpm
        else "Tempo can be free-form but maintain a steady pulse."
    )
    return " ".join([
        f"{prompt.strip()} ({', '.join(context)})",
        tempo_line,
        f"Fill the full {target_length:g} seconds with evolving layers; no dead air until the final tail.",
    ])


def build_sound_design_prompt(prompt: str, parameters: SoundParameters, target_length: float) -> str:
    """Prompt for general sound-design engines: the full parameter vector as production notes."""
    moods = ", ".join(parameters.mood_tags) if parameters.mood_tags else "Free-form"
    notes = [
        f"Category: {parameters.type}",
        f"Target length: {target_length:g} seconds",
        f"Mood tags: {moods}",
        f"BPM: {parameters.bpm or 'Free'} | Key: {parameters.key or 'Atonal / FX'}",
        f"Dynamics: intensity {parameters.intensity:.0f}/100, texture {parameters.texture:.0f}/100",
        f"Tone: brightness {parameters.brightness:.0f}/100, noisiness {parameters.noisiness:.0f}/100",
    ]
    if parameters.seed is not None:
        notes.append(f"Seed: {parameters.seed} (use for repeatable structure)")
    lines = [f"Primary concept:\n{prompt.strip()}", "", "Production notes:"]
    lines.extend(f"- {line}" for line in notes)
    lines.append("No narration, speech, or text-to-voice artifacts. Keep it purely sound design.")
    return "\n".join(lines)


class SynthesisClient:
    """
    HTTP clients for the generation engines.

    An engine is available when its API key is configured; "mock" is always
    available and returns a bundled demo clip.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        poll_interval: float = 3.0,
        poll_timeout: float = 120.0,
    ):
        self.transport = transport
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._handlers: Dict[str, Callable[[str, SoundParameters], Awaitable[SynthesisResult]]] = {
            "mock": self._generate_mock,
            "elevenlabs": self._generate_elevenlabs,
            "stability": self._generate_stability,
            "replicate": self._generate_replicate,
            "fal": self._generate_fal,
            "openai": self._generate_openai,
            "suno": self._generate_suno,
        }

    def available_engines(self) -> Set[str]:
        return {engine_id for engine_id in API_KEY_ENV if _api_key(engine_id)}

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def generate(self, engine_id: str, prompt: str, parameters: SoundParameters) -> SynthesisResult:
        handler = self._handlers.get(engine_id)
        if handler is None:
            raise SynthesisFailure(f"Unknown engine: {engine_id}", engine_id)
        if engine_id != "mock" and not _api_key(engine_id):
            raise SynthesisFailure(f"{API_KEY_ENV[engine_id]} is not configured", engine_id)
        try:
            return await handler(prompt, parameters)
        except SynthesisFailure:
            raise
        except httpx.HTTPError as e:
            logger.error(f"{engine_id} request failed: {e}")
            raise SynthesisFailure(f"{engine_id} request failed: {e}", engine_id) from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise SynthesisFailure(f"{engine_id} returned an unexpected payload: {e}", engine_id) from e

    @staticmethod
    def _raise_for_status(engine_id: str, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise SynthesisFailure(
                f"{engine_id} request failed ({response.status_code}): {response.text[:400]}", engine_id
            )

    async def _generate_mock(self, prompt: str, parameters: SoundParameters) -> SynthesisResult:
        await asyncio.sleep(0)
        return SynthesisResult(audio_url="/dummy-audio/demo1.mp3")

    async def _generate_elevenlabs(self, prompt: str, parameters: SoundParameters) -> SynthesisResult:
        output_format = os.environ.get("ELEVENLABS_OUTPUT_FORMAT", "mp3_44100_192")
        payload = {
            "text": prompt,
            "duration_seconds": _target_length(parameters, 0.5, 22),
            "prompt_influence": 0.5,
        }
        async with self._client(60.0) as client:
            response = await client.post(
                ELEVENLABS_URL,
                params={"output_format": output_format},
                headers={"xi-api-key": _api_key("elevenlabs"), "Content-Type": "application/json"},
                json=payload,
            )
        self._raise_for_status("elevenlabs", response)

        audio = response.content
        mime = "audio/wav"
        if output_format.startswith("mp3"):
            mime = "audio/mpeg"
        elif output_format.startswith("opus"):
            mime = "audio/opus"
        provenance = response.headers.get("request-id") or _content_id(audio)
        return SynthesisResult(audio_url=_data_url(mime, audio), provenance_id=provenance)

    async def _generate_stability(self, prompt: str, parameters: SoundParameters) -> SynthesisResult:
        audio_format = os.environ.get("STABILITY_AUDIO_FORMAT", "wav").lower()
        length = _target_length(parameters, 1, 180)
        payload = {
            "model": os.environ.get("STABILITY_AUDIO_MODEL", "stable-audio"),
            "prompt": build_music_prompt(prompt, parameters, length),
            "cfg_scale": 7,
            "seed": parameters.seed if parameters.seed is not None else 0,
            "duration": length,
            "audio_format": audio_format,
            "mode": "text-to-audio",
        }
        async with self._client(120.0) as client:
            response = await client.post(
                os.environ.get("STABILITY_AUDIO_ENDPOINT", STABILITY_URL),
                headers={"Authorization": f"Bearer {_api_key('stability')}", "Content-Type": "application/json"},
                json=payload,
            )
        self._raise_for_status("stability", response)

        data = response.json()
        audio_b64 = (
            (data.get("audio") or [{}])[0].get("audio_base64")
            or (data.get("output") or [{}])[0].get("audio")
            or data.get("audio_base64")
        )
        if not audio_b64:
            raise SynthesisFailure("stability response missing audio data", "stability")
        mime = (data.get("audio") or [{}])[0].get("mime") or MIME_BY_FORMAT.get(audio_format, "audio/wav")
        audio = base64.b64decode(audio_b64)
        return SynthesisResult(audio_url=_data_url(mime, audio), provenance_id=_content_id(audio))

    async def _generate_replicate(self, prompt: str, parameters: SoundParameters) -> SynthesisResult:
        length = _target_length(parameters, 1, 30)
        headers = {
            "Authorization": f"Bearer {_api_key('replicate')}",
            "Content-Type": "application/json",
            "Prefer": "wait",
        }
        payload = {
            "version": REPLICATE_MUSICGEN_VERSION,
            "input": {
                "prompt": build_music_prompt(prompt, parameters, length),
                "model_version": "stereo-large",
                "duration": int(round(length)),
                "temperature": parameters.intensity / 100,
                "top_k": 320,
                "top_p": 0.3,
                "output_format": "wav",
                "seed": parameters.seed if parameters.seed is not None else -1,
            },
        }
        async with self._client(90.0) as client:
            response = await client.post(REPLICATE_URL, headers=headers, json=payload)
            self._raise_for_status("replicate", response)
            prediction = response.json()

            waited = 0.0
            while prediction.get("status") not in ("succeeded", "failed", "canceled"):
                if waited >= self.poll_timeout:
                    raise SynthesisFailure("replicate prediction timed out", "replicate")
                await asyncio.sleep(self.poll_interval)
                waited += self.poll_interval
                poll = await client.get(prediction["urls"]["get"], headers=headers)
                self._raise_for_status("replicate", poll)
                prediction = poll.json()

        if prediction.get("status") != "succeeded":
            raise SynthesisFailure(f"replicate prediction {prediction.get('status')}: {prediction.get('error')}", "replicate")
        output = prediction.get("output")
        audio_url = output[0] if isinstance(output, list) else output
        if not audio_url:
            raise SynthesisFailure("No audio URL from replicate", "replicate")
        return SynthesisResult(audio_url=str(audio_url), provenance_id=prediction.get("id"))

    async def _generate_fal(self, prompt: str, parameters: SoundParameters) -> SynthesisResult:
        length = _target_length(parameters, 1, 180)
        payload = {
            "prompt": build_music_prompt(prompt, parameters, length),
            "duration": length,
            "num_inference_steps": 100,
            "guidance_scale": 7.0,
        }
        async with self._client(180.0) as client:
            response = await client.post(
                FAL_URL,
                headers={"Authorization": f"Key {_api_key('fal')}", "Content-Type": "application/json"},
                json=payload,
            )
        self._raise_for_status("fal", response)

        audio_url = (response.json().get("audio_file") or {}).get("url")
        if not audio_url:
            raise SynthesisFailure("fal did not return audio URL", "fal")
        return SynthesisResult(audio_url=audio_url, provenance_id=response.headers.get("x-fal-request-id"))

    async def _generate_openai(self, prompt: str, parameters: SoundParameters) -> SynthesisResult:
        audio_format = os.environ.get("OPENAI_AUDIO_FORMAT", "wav")
        length = _target_length(parameters, 2, 60)
        payload = {
            "model": os.environ.get("OPENAI_AUDIO_MODEL", "gpt-4o-audio-preview"),
            "modalities": ["text", "audio"],
            "audio": {"voice": os.environ.get("OPENAI_AUDIO_VOICE", "alloy"), "format": audio_format},
            "messages": [
                {
                    "role": "system",
                    "content": "You are an advanced sound designer. Craft immersive, original SFX or "
                               "musical textures from prompts. Fill the entire duration with sound.",
                },
                {"role": "user", "content": build_sound_design_prompt(prompt, parameters, length)},
            ],
        }
        async with self._client(120.0) as client:
            response = await client.post(
                OPENAI_URL,
                headers={"Authorization": f"Bearer {_api_key('openai')}", "Content-Type": "application/json"},
                json=payload,
            )
        self._raise_for_status("openai", response)

        data = response.json()
        audio_b64 = data["choices"][0]["message"]["audio"]["data"]
        audio = base64.b64decode(audio_b64)
        return SynthesisResult(
            audio_url=_data_url(MIME_BY_FORMAT.get(audio_format, "audio/wav"), audio),
            provenance_id=data.get("id"),
        )

    async def _generate_suno(self, prompt: str, parameters: SoundParameters) -> SynthesisResult:
        base_url = os.environ.get("SUNO_BASE_URL", SUNO_BASE_URL)
        headers = {
            "Authorization": f"Bearer {_api_key('suno')}",
            "Content-Type": "application/json",
        }
        payload = {
            "prompt": build_music_prompt(prompt, parameters, _target_length(parameters, 5, 240)),
            "customMode": False,
            "instrumental": False,
            "model": "V4_5ALL",
            "callBackUrl": "https://webhook.site/placeholder",
        }
        async with self._client(60.0) as client:
            response = await client.post(f"{base_url}/generate", headers=headers, json=payload)
            data = response.json()
            if data.get("code") != 200:
                raise SynthesisFailure(data.get("msg", "Unknown error"), "suno")
            task_id = data["data"]["taskId"]

            waited = 0.0
            while waited < self.poll_timeout:
                await asyncio.sleep(self.poll_interval)
                waited += self.poll_interval
                status = await client.get(f"{base_url}/generate/record-info", params={"taskId": task_id}, headers=headers)
                # 404 while the task is still being scheduled
                if status.status_code == 404:
                    continue
                record = status.json()
                if record.get("code") != 200:
                    raise SynthesisFailure(record.get("msg", "Unknown error"), "suno")
                task = record.get("data", {})
                if task.get("status") in ("FIRST_SUCCESS", "SUCCESS"):
                    clips = task.get("response", {}).get("sunoData", [])
                    if clips and clips[0].get("audioUrl"):
                        return SynthesisResult(audio_url=clips[0]["audioUrl"], provenance_id=task_id)
                elif "FAILED" in str(task.get("status", "")) or "ERROR" in str(task.get("status", "")):
                    raise SynthesisFailure(f"suno task {task_id} {task.get('status')}", "suno")

        raise SynthesisFailure(f"suno task {task_id} timed out", "suno")
