"""Shared type definitions for call-flow state machines."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

# Per-request payload from the telephony provider (Twilio webhook parameters).
CallInput = Mapping[str, Any]

# Context accumulated across the requests of one call.
Options = Mapping[str, Any]

# Turns resolver directives into the opaque markup returned to the provider.
Renderer = Callable[[Any], str]

# Resolver registered for one state name.
StateResolver = Callable[[CallInput, Options], Any]

# Fallback resolver that also receives the requested state name.
DefaultStateResolver = Callable[[str, CallInput, Options], Any]

# Pattern predicate evaluated against the request input and options.
RulePredicate = Callable[[CallInput, Options], bool]
