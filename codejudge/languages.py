import shutil
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Tuple

from codejudge.exceptions import UnsupportedLanguageError

DEFAULT_ENV = (("LANG", "C.UTF-8"), ("LC_ALL", "C.UTF-8"))

MB = 1024  # in KB


@dataclass(frozen=True)
class LanguageConfig:
    """One supported language.

    Command templates are argument lists rendered per workspace. Placeholders:
    ``{source}`` and ``{artifact}`` (file names relative to the workspace),
    ``{memory_mb}`` (effective memory limit). ``compile_command`` is set iff the
    language has a separate compile step, in which case ``artifact_name`` names
    what it produces.
    """
    id: str
    display_name: str
    file_extension: str
    run_command: Tuple[str, ...]
    compile_command: Optional[Tuple[str, ...]] = None
    source_name: Optional[str] = None
    artifact_name: Optional[str] = None
    default_time_limit_ms: int = 5000
    default_memory_limit_kb: int = 128 * MB
    # Runtimes that reserve large virtual regions up front (JVM, V8, Go) cannot
    # run under an address-space rlimit; they rely on RSS sampling only.
    limit_address_space: bool = True
    env: Tuple[Tuple[str, str], ...] = DEFAULT_ENV
    template: str = field(default="", repr=False)

    def __post_init__(self):
        if not self.run_command:
            raise ValueError(f"Language {self.id!r} has an empty run command")
        if self.compile_command is not None and not self.artifact_name:
            raise ValueError(f"Compiled language {self.id!r} needs an artifact name")

    @property
    def requires_compile(self) -> bool:
        return self.compile_command is not None

    @property
    def source_file_name(self) -> str:
        return self.source_name or f"solution.{self.file_extension}"

    @property
    def toolchain(self) -> str:
        """Binary that must exist on the host for this language to work."""
        command = self.compile_command or self.run_command
        return command[0]

    def _render(self, template: Iterable[str], memory_limit_kb: int = 0) -> List[str]:
        values = {
            "source": self.source_file_name,
            "artifact": self.artifact_name or "",
            "memory_mb": max(memory_limit_kb // MB, 1),
        }
        return [part.format(**values) for part in template]

    def render_compile(self) -> List[str]:
        if self.compile_command is None:
            return []
        return self._render(self.compile_command)

    def render_run(self, memory_limit_kb: int) -> List[str]:
        return self._render(self.run_command, memory_limit_kb)

    def environment(self) -> Dict[str, str]:
        return dict(self.env)

    def is_available(self) -> bool:
        return shutil.which(self.toolchain) is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "fileExtension": self.file_extension,
            "compiled": self.requires_compile,
            "defaultTimeLimitMs": self.default_time_limit_ms,
            "defaultMemoryLimitKb": self.default_memory_limit_kb,
            "template": self.template,
        }


class LanguageRegistry(object):
    """Immutable catalog of languages, keyed by lower-cased id."""

    def __init__(self, languages: Iterable[LanguageConfig]):
        ordered = {}
        for language in languages:
            key = language.id.lower()
            if key in ordered:
                raise ValueError(f"Duplicate language id: {language.id}")
            ordered[key] = language
        self._languages = MappingProxyType(ordered)

    def get(self, language_id: Optional[str]) -> Optional[LanguageConfig]:
        if not language_id:
            return None
        return self._languages.get(language_id.strip().lower())

    def lookup(self, language_id: Optional[str]) -> LanguageConfig:
        language = self.get(language_id)
        if language is None:
            raise UnsupportedLanguageError(language_id)
        return language

    def list_supported(self) -> Tuple[LanguageConfig, ...]:
        return tuple(self._languages.values())

    def ids(self) -> List[str]:
        return list(self._languages)

    def __contains__(self, language_id) -> bool:
        return self.get(language_id) is not None

    def __len__(self) -> int:
        return len(self._languages)


PYTHON = LanguageConfig(
    id="python",
    display_name="Python 3",
    file_extension="py",
    run_command=("python3", "{source}"),
    env=DEFAULT_ENV + (("PYTHONIOENCODING", "UTF-8"), ("PYTHONDONTWRITEBYTECODE", "1")),
    template='''def solve():
    # Write your solution here
    pass

if __name__ == "__main__":
    solve()''',
)

JAVASCRIPT = LanguageConfig(
    id="javascript",
    display_name="Node.js",
    file_extension="js",
    run_command=("node", "{source}"),
    limit_address_space=False,
    template='''function solve() {
    // Write your solution here
}

solve();''',
)

JAVA = LanguageConfig(
    id="java",
    display_name="Java",
    file_extension="java",
    source_name="Solution.java",
    artifact_name="Solution.class",
    compile_command=("javac", "-encoding", "UTF-8", "{source}"),
    run_command=("java", "-Xmx{memory_mb}m", "-Xss64m", "-cp", ".", "Solution"),
    default_time_limit_ms=10000,
    default_memory_limit_kb=256 * MB,
    limit_address_space=False,
    template='''import java.util.*;
import java.io.*;

public class Solution {
    public static void main(String[] args) throws IOException {
        Scanner sc = new Scanner(System.in);
        // Write your solution here
        sc.close();
    }
}''',
)

CPP = LanguageConfig(
    id="cpp",
    display_name="C++",
    file_extension="cpp",
    artifact_name="solution",
    compile_command=("g++", "-std=c++17", "-O2", "-DONLINE_JUDGE", "-o", "{artifact}", "{source}"),
    run_command=("./{artifact}",),
    default_memory_limit_kb=64 * MB,
    template='''#include <iostream>
#include <vector>
#include <algorithm>
using namespace std;

int main() {
    ios_base::sync_with_stdio(false);
    cin.tie(NULL);

    // Write your solution here

    return 0;
}''',
)

C = LanguageConfig(
    id="c",
    display_name="C",
    file_extension="c",
    artifact_name="solution",
    compile_command=("gcc", "-std=c11", "-O2", "-DONLINE_JUDGE", "-o", "{artifact}", "{source}", "-lm"),
    run_command=("./{artifact}",),
    default_memory_limit_kb=64 * MB,
    template='''#include <stdio.h>
#include <stdlib.h>

int main() {
    // Write your solution here
    return 0;
}''',
)

GO = LanguageConfig(
    id="go",
    display_name="Go",
    file_extension="go",
    artifact_name="solution",
    compile_command=("go", "build", "-o", "{artifact}", "{source}"),
    run_command=("./{artifact}",),
    limit_address_space=False,
    env=DEFAULT_ENV + (("GO111MODULE", "off"), ("CGO_ENABLED", "0")),
    template='''package main

import "fmt"

func main() {
    // Write your solution here
    fmt.Println()
}''',
)

RUST = LanguageConfig(
    id="rust",
    display_name="Rust",
    file_extension="rs",
    artifact_name="solution",
    compile_command=("rustc", "-O", "-o", "{artifact}", "{source}"),
    run_command=("./{artifact}",),
    template='''use std::io::{self, Read};

fn main() {
    let mut input = String::new();
    io::stdin().read_to_string(&mut input).unwrap();
    // Write your solution here
}''',
)

DEFAULT_LANGUAGES = (PYTHON, JAVASCRIPT, JAVA, CPP, C, GO, RUST)


def default_registry() -> LanguageRegistry:
    return LanguageRegistry(DEFAULT_LANGUAGES)
