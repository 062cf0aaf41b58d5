"""
TypeScript accessor generation.

Renders the public and private variables of an env file as a TypeScript
module: runtime schemas for valibot or zod, or bare types when no schema
library is used.
"""

from typing import List

from .config import TypegenConfig
from .inference import EnvVar, looks_like_url


HEADER = "// Generated by envtool. Do not edit by hand.\n"

LAZY_TS_CONTENT = """\
// Lazily evaluated values: the loader runs on first access only.
export function lazy<T>(load: () => T): () => T {
  let loaded = false
  let value: T
  return () => {
    if (!loaded) {
      value = load()
      loaded = true
    }
    return value
  }
}
"""


def _field(var: EnvVar, schema: str) -> str:
    url = looks_like_url(var.value)
    if schema == "valibot":
        return "v.pipe(v.string(), v.url())" if url else "v.string()"
    if schema == "zod":
        return "z.string().url()" if url else "z.string()"
    return "string"


def _object(name: str, env_vars: List[EnvVar], schema: str) -> List[str]:
    fields = [f"  {var.key}: {_field(var, schema)}," for var in env_vars]
    if schema == "valibot":
        return [f"export const {name} = v.object({{", *fields, "})"]
    if schema == "zod":
        return [f"export const {name} = z.object({{", *fields, "})"]
    return [f"export type {name} = {{", *[line.rstrip(',') for line in fields], "}"]


def generate_types(env_vars: List[EnvVar], config: TypegenConfig) -> str:
    """
    Render the typed accessor module.

    Args:
        env_vars: Variables from parse_env_vars (already sorted, DOTENV_* removed)
        config: Typegen settings; ``schema_lib`` picks the output flavour

    Returns:
        TypeScript source
    """
    schema = config.schema_lib
    public = [var for var in env_vars if var.is_public]
    private = [var for var in env_vars if not var.is_public]

    lines = [HEADER.rstrip("\n")]
    if schema == "valibot":
        lines += ["import * as v from 'valibot'", ""]
        lines += _object("publicEnvSchema", public, schema) + [""]
        lines += _object("privateEnvSchema", private, schema) + [""]
        lines += [
            "export type PublicEnv = v.InferOutput<typeof publicEnvSchema>",
            "export type PrivateEnv = v.InferOutput<typeof privateEnvSchema>",
        ]
    elif schema == "zod":
        lines += ["import { z } from 'zod'", ""]
        lines += _object("publicEnvSchema", public, schema) + [""]
        lines += _object("privateEnvSchema", private, schema) + [""]
        lines += [
            "export type PublicEnv = z.infer<typeof publicEnvSchema>",
            "export type PrivateEnv = z.infer<typeof privateEnvSchema>",
        ]
    else:
        lines += [""]
        lines += _object("PublicEnv", public, schema) + [""]
        lines += _object("PrivateEnv", private, schema)

    return "\n".join(lines) + "\n"
