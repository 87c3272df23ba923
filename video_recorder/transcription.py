"""Transcribe audio using SpeechRecognition (Google Web Speech API or OpenAI Whisper)."""

import asyncio
import logging
from pathlib import Path

import speech_recognition as sr

from video_recorder.errors import TranscriptionServiceError


logger = logging.getLogger(__name__)

BACKENDS = ("google", "openai")


class TranscriptionClient:
    """
    Sends an audio file to a speech-recognition backend and returns plain text.

    No retries are made here; a failed request fails the call.
    """

    def __init__(
        self,
        backend: str = "google",
        language: str = "en-US",
        chunk_seconds: int = 30,
        openai_model: str = "whisper-1",
        timeout: float | None = None,
    ):
        if backend not in BACKENDS:
            raise ValueError(f"Unknown transcription backend {backend!r}; expected one of {BACKENDS}")
        self.backend = backend
        self.language = language
        self.chunk_seconds = chunk_seconds
        self.openai_model = openai_model
        self.timeout = timeout

    def _recognizer(self) -> sr.Recognizer:
        recognizer = sr.Recognizer()
        recognizer.operation_timeout = self.timeout
        return recognizer

    def audio_to_text(self, recognizer: sr.Recognizer, audio_data: sr.AudioData) -> str | None:
        """
        Transcribe one piece of audio.

        Returns:
            Recognized text, or None if the backend heard no speech.

        Raises:
            TranscriptionServiceError: The backend could not be reached or refused the request.
        """
        try:
            if self.backend == "openai":
                text = recognizer.recognize_openai(audio_data, model=self.openai_model)
            else:
                text = recognizer.recognize_google(audio_data, language=self.language)
        except sr.UnknownValueError:
            return None
        except sr.RequestError as e:
            raise TranscriptionServiceError(f"{self.backend} speech recognition request failed: {e}") from e
        except Exception as e:
            # openai client errors are not wrapped by SpeechRecognition
            raise TranscriptionServiceError(f"{self.backend} speech recognition failed: {e}") from e
        text = (text or "").strip()
        return text or None

    def transcribe_file(self, audio_path: str | Path) -> str | None:
        """
        Transcribe a WAV/AIFF/FLAC file, sending it in ``chunk_seconds`` windows.

        Args:
            audio_path: Path to the audio file.

        Returns:
            The recognized text joined with spaces, or None if nothing was recognized.
        """
        recognizer = self._recognizer()
        parts: list[str] = []
        try:
            with sr.AudioFile(str(audio_path)) as source:
                total = source.DURATION
                offset = 0.0
                while offset < total:
                    audio_data = recognizer.record(source, duration=self.chunk_seconds)
                    offset += self.chunk_seconds
                    text = self.audio_to_text(recognizer, audio_data)
                    if text:
                        parts.append(text)
        except (ValueError, OSError, EOFError) as e:
            raise TranscriptionServiceError(f"could not read audio file {audio_path}: {e}") from e

        transcript = " ".join(parts).strip()
        logger.debug("transcribed %s: %d chunk(s) with speech", audio_path, len(parts))
        return transcript or None

    async def transcribe(self, audio_path: str | Path) -> str | None:
        """Async wrapper: runs the blocking recognizer in a worker thread."""
        return await asyncio.to_thread(self.transcribe_file, audio_path)
