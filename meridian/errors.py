# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Meridian Error Hierarchy

Every error raised by the dispatch and execution core derives from
MeridianError. The rendered message lists numbered suggestions and the
debugging context (operator type, device, net, blob) below the summary.

Error Categories:
- MeridianError: Base class for all Meridian errors
- ConfigurationError: Registry/engine-preference/knob misconfiguration
- SchemaError: Operator definition rejected by its schema
- UnsupportedOperatorFeature: Engine cannot handle a definition (recoverable)
- OperatorCreationError: No implementation could be constructed
- NetConstructionError: Net wiring errors
- ValidationError: Malformed definitions, missing blobs, bad shapes
"""

from typing import Dict, List, Optional


def _context(**values) -> Dict[str, str]:
    """Keep the entries that were given, stringified."""
    return {key: str(value) for key, value in values.items() if value is not None}


class MeridianError(Exception):
    """
    Base class for all Meridian errors.

    Attributes:
        message: Summary line
        suggestions: Things to check, rendered as a numbered list
        context: Debugging details, rendered as key: value lines
    """

    hints: List[str] = []

    def __init__(
        self,
        message: str,
        suggestions: Optional[List[str]] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.suggestions = list(suggestions) if suggestions is not None else list(self.hints)
        self.context = dict(context or {})
        super().__init__(self.render())

    def render(self) -> str:
        sections = [self.message]
        if self.suggestions:
            sections.append(
                "Suggestions:\n"
                + "\n".join(f"  {n}. {text}" for n, text in enumerate(self.suggestions, 1))
            )
        if self.context:
            sections.append(
                "Context:\n"
                + "\n".join(f"  {key}: {value}" for key, value in self.context.items())
            )
        return "\n\n".join(sections)


class ConfigurationError(MeridianError):
    """
    Registry or knob misconfiguration.

    Raised when a device type is looked up before it was registered, an
    engine preference names an unknown device or operator type, an
    operator key or schema is registered twice, or a MERIDIAN_* knob holds
    an invalid value.
    """

    hints = [
        "Check that the operator library for this device was imported",
        "Verify registration calls happen before graphs are constructed",
        "Review the configuration knobs (MERIDIAN_* environment variables)",
    ]

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[str] = None,
    ):
        super().__init__(
            f"Configuration error: {message}",
            context=_context(config_key=config_key or None, config_value=config_value),
        )


class SchemaError(MeridianError):
    """Operator definition did not pass schema checking; construction aborts."""

    hints = [
        "Check the number of inputs and outputs against the schema",
        "Check which input/output pairs may share a blob (in-place)",
    ]

    def __init__(self, op_type: str, op_def_debug: Optional[str] = None):
        self.op_type = op_type
        super().__init__(
            f"Operator def of type '{op_type}' did not pass schema checking",
            context=_context(operation=op_type, operator_def=op_def_debug or None),
        )


class UnsupportedOperatorFeature(MeridianError):
    """
    Raised by an operator constructor when its engine cannot handle the
    definition. Dispatch catches it and tries the next candidate engine.
    """

    def __init__(self, message: str, op_type: Optional[str] = None):
        self.op_type = op_type
        super().__init__(message, context=_context(operation=op_type))


class OperatorCreationError(MeridianError):
    """Neither a candidate engine nor the default implementation was usable."""

    def __init__(self, op_type: str, device: str, op_def_debug: str):
        self.op_type = op_type
        self.device = device
        super().__init__(
            f"Cannot create operator of type '{op_type}' on the device "
            f"'{device}'. Verify that implementation for the corresponding "
            f"device exist. Operator def: {op_def_debug}",
            suggestions=[
                "Import the module that registers this operator",
                f"Register an implementation for device '{device}'",
            ],
            context=_context(operation=op_type, device=device),
        )


class NetConstructionError(MeridianError):
    """
    Net wiring error caught at construction time: a missing external
    input, an external output that is never produced, an operator input
    without a source, or a net that could not be built at all.
    """

    hints = [
        "Create the external input blobs before creating the net",
        "Check external_input/external_output against the operators",
    ]

    def __init__(
        self,
        message: str,
        net_name: Optional[str] = None,
        blob_name: Optional[str] = None,
    ):
        self.net_name = net_name
        self.blob_name = blob_name
        super().__init__(
            f"Net construction failed: {message}",
            context=_context(net=net_name, blob=blob_name),
        )


class ValidationError(MeridianError):
    """Malformed definition, missing blob, or tensor a kernel cannot accept."""

    hints = ["Check the definition's arguments and blob names"]

    def __init__(
        self,
        message: str,
        parameter: Optional[str] = None,
        expected: Optional[str] = None,
        received: Optional[str] = None,
    ):
        super().__init__(
            f"Validation failed: {message}",
            context=_context(
                parameter=parameter or None,
                expected=expected or None,
                received=received or None,
            ),
        )


def format_shape_mismatch(
    expected_shape: tuple,
    actual_shape: tuple,
    tensor_name: Optional[str] = None,
) -> ValidationError:
    """Build the ValidationError a kernel raises for an unexpected shape."""
    return ValidationError(
        f"Shape mismatch: expected {expected_shape}, got {actual_shape}",
        parameter=tensor_name or "tensor",
        expected=str(expected_shape),
        received=str(actual_shape),
    )
