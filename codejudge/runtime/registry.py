"""
Registry of runtime images, keyed by language identifier.
"""
import logging
import re
import threading
from typing import Dict, List, Optional

from codejudge.exceptions import UnsupportedLanguageError
from codejudge.runtime.base import RuntimeImage

logger = logging.getLogger(__name__)

_JAVA_CLASS_RE = re.compile(r"public\s+(?:final\s+|abstract\s+)*class\s+(\w+)")
DEFAULT_JAVA_CLASS = "Main"


def extract_java_class_name(source_code: str) -> str:
    """Name of the first public class, which javac requires the file to be named after."""
    match = _JAVA_CLASS_RE.search(source_code)
    if match:
        return match.group(1)
    return DEFAULT_JAVA_CLASS


def _java_source_name(source_code: str) -> str:
    return f"{extract_java_class_name(source_code)}.java"


def default_images() -> List[RuntimeImage]:
    return [
        RuntimeImage(
            language="python",
            extension="py",
            run_command=("python3", "{source}"),
            docker_image="python:3.11-slim",
            version="3.11",
            aliases=("py", "python3"),
        ),
        RuntimeImage(
            language="cpp",
            extension="cpp",
            compile_command=("g++", "-O2", "-std=c++17", "-o", "main", "{source}"),
            run_command=("./main",),
            docker_image="gcc:10",
            version="g++ 10",
            aliases=("c++",),
        ),
        RuntimeImage(
            language="c",
            extension="c",
            compile_command=("gcc", "-O2", "-o", "main", "{source}", "-lm"),
            run_command=("./main",),
            docker_image="gcc:10",
            version="gcc 10",
        ),
        RuntimeImage(
            language="java",
            extension="java",
            compile_command=("javac", "{source}"),
            run_command=("java", "-cp", ".", "{stem}"),
            docker_image="eclipse-temurin:17-jdk",
            version="17",
            source_namer=_java_source_name,
        ),
        RuntimeImage(
            language="javascript",
            extension="js",
            run_command=("node", "{source}"),
            docker_image="node:20-slim",
            version="20",
            aliases=("js", "node"),
        ),
    ]


class RuntimeRegistry:
    """Thread-safe map of language identifiers (and aliases) to runtime images."""

    def __init__(self, images: Optional[List[RuntimeImage]] = None):
        self._images: Dict[str, RuntimeImage] = {}
        self._aliases: Dict[str, str] = {}
        self._lock = threading.RLock()
        for image in images if images is not None else default_images():
            self.register(image)

    def register(self, image: RuntimeImage) -> None:
        with self._lock:
            language = image.language.lower()
            if language in self._images:
                logger.info(f"Replacing runtime image for {language}")
            self._images[language] = image
            for alias in image.aliases:
                self._aliases[alias.lower()] = language

    def unregister(self, language: str) -> None:
        with self._lock:
            image = self._images.pop(language.lower(), None)
            if image is None:
                return
            for alias in image.aliases:
                self._aliases.pop(alias.lower(), None)

    def resolve(self, language: str) -> RuntimeImage:
        """Look up the image for ``language`` or one of its aliases.

        Raises:
            UnsupportedLanguageError: If no image is registered for it.
        """
        key = (language or "").strip().lower()
        with self._lock:
            key = self._aliases.get(key, key)
            image = self._images.get(key)
            if image is None:
                raise UnsupportedLanguageError(language, sorted(self._images))
            return image

    def supports(self, language: str) -> bool:
        try:
            self.resolve(language)
            return True
        except UnsupportedLanguageError:
            return False

    @property
    def languages(self) -> List[str]:
        with self._lock:
            return sorted(self._images)

    def list_images(self) -> List[RuntimeImage]:
        with self._lock:
            return [self._images[name] for name in sorted(self._images)]


_global_registry: Optional[RuntimeRegistry] = None


def set_runtime_registry(registry: RuntimeRegistry) -> None:
    """Set the global runtime registry."""
    global _global_registry
    _global_registry = registry
    logger.info(f"Runtime registry configured: languages={registry.languages}")


def get_runtime_registry() -> RuntimeRegistry:
    """Get the global runtime registry, creating the default one if none exists."""
    global _global_registry
    if _global_registry is None:
        _global_registry = RuntimeRegistry()
    return _global_registry
