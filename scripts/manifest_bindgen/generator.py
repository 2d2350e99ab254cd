"""
Main generator module

Orchestrates the expanders and a backend to generate complete bindings for a
manifest.
"""

from dataclasses import dataclass
from typing import Optional
import os
import shutil
import subprocess

from .array import ArrayGenerator
from .backend import Backend
from .codegen import Fragments
from .context import context_declarations
from .entry import EntryGenerator
from .errors import ConfigError, OutputError
from .manifest import Manifest
from .ocaml import OCamlBackend
from .opaque import OpaqueGenerator
from .python import PythonBackend
from .rust import RustBackend
from .types import TypeClass, classify

# Backend class for each target language
BACKENDS: dict[str, type[Backend]] = {
    'ocaml': OCamlBackend,
    'rust': RustBackend,
    'python': PythonBackend,
}

# Target language for each primary artifact suffix
SUFFIX_LANGS = {
    '.ml': 'ocaml',
    '.rs': 'rust',
    '.py': 'python',
}

DEFAULT_PREFIX = 'futhark'


@dataclass(frozen=True)
class Config:
    """Validated generator configuration"""
    manifest_path: str
    output_path: str
    lang: str
    prefix: str = DEFAULT_PREFIX
    run_formatter: bool = False


def lang_for_path(path: str) -> Optional[str]:
    """Target language implied by an output path, None if unknown"""
    _, ext = os.path.splitext(path)
    return SUFFIX_LANGS.get(ext.lower())


def get_backend(lang: str, prefix: str = DEFAULT_PREFIX) -> Backend:
    """Instantiate the backend for a target language"""
    if lang not in BACKENDS:
        raise ConfigError(
            f'unknown target language {lang!r}',
            f'expected one of {", ".join(BACKENDS)}',
        )
    return BACKENDS[lang](prefix)


class Generator:
    """Main binding generator"""

    def __init__(self, backend: Backend):
        self.backend = backend

    def generate(self, manifest: Manifest) -> dict[str, str]:
        """Generate all artifacts in memory, keyed by suffix

        Every call starts from a fresh resolver and fresh fragments, so
        repeated calls on the same manifest produce identical output.
        """
        if manifest.backend is None:
            print(f'  >> warning: unknown backend {manifest.backend_name!r}, '
                  'generating without a configuration knob')

        backend = self.backend
        resolver = backend.make_resolver()
        frags = Fragments()

        for fn in context_declarations(backend, manifest.knob):
            backend.add_foreign(frags, fn)

        arrays = ArrayGenerator(backend, resolver)
        opaques = OpaqueGenerator(backend, resolver)
        entries = EntryGenerator(backend, resolver)

        for name, ty in manifest.types.items():
            if classify(ty) is TypeClass.ARRAY:
                arrays.generate(name, ty, frags)
            else:
                opaques.generate(name, ty, frags)

        for name, entry in manifest.entry_points.items():
            entries.generate(name, entry, frags)

        return backend.assemble(manifest, frags)

    def artifact_paths(self, output_path: str) -> dict[str, str]:
        """Path of every artifact; siblings share the primary's stem"""
        stem, _ = os.path.splitext(output_path)
        primary = self.backend.suffixes[0]
        return {
            suffix: output_path if suffix == primary else stem + suffix
            for suffix in self.backend.suffixes
        }

    def write(self, manifest: Manifest, output_path: str,
              source: str = 'manifest', run_formatter: bool = False) -> list[str]:
        """Generate and write all artifacts, returning the written paths"""
        print(f'=== Generating {self.backend.name} bindings:')
        artifacts = self.generate(manifest)
        paths = self.artifact_paths(output_path)

        written = []
        for suffix, text in artifacts.items():
            path = paths[suffix]
            print(f'  {source} => {path}')
            try:
                out_dir = os.path.dirname(path)
                if out_dir:
                    os.makedirs(out_dir, exist_ok=True)
                with open(path, 'w', encoding='utf-8', newline='\n') as f:
                    f.write(text)
            except OSError as e:
                raise OutputError(f'cannot write {path}: {e.strerror}') from e
            written.append(path)

        if run_formatter:
            self.format(written[0])
        return written

    def format(self, path: str) -> bool:
        """Run the backend's external formatter in place, if available"""
        command = self.backend.formatter
        if not command:
            print(f'  >> warning: no formatter for {self.backend.name} output')
            return False
        exe = shutil.which(command[0])
        if exe is None:
            print(f'  >> warning: {command[0]} not found on PATH, leaving {path} unformatted')
            return False
        result = subprocess.run([exe, *command[1:], path], capture_output=True, text=True)
        if result.returncode != 0:
            print(f'  >> warning: {command[0]} failed on {path}: {result.stderr.strip()}')
            return False
        return True
