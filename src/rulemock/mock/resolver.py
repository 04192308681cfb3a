"""
rulemock Response Resolver

Picks the effective response for a matched rule and renders it.

Resolution order, first applicable wins:
1. expectation  - first expectation whose conditions all hold
2. preset       - the rule's active response preset
3. default      - the rule's own response fields (status 200)

Rendering depends on the resolved mode and content type:
- advanced      - run the script, send its return value as JSON
- binary types  - stream the configured local file
- text types    - send the body, expanding a data template when enabled
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Any, Optional
from urllib.parse import quote

from fastapi import Response

from ..common import base_content_type, is_binary_content_type
from .conditions import find_expectation
from .errors import ClientError, RenderError
from .sandbox import ScriptSandbox
from .template import DataTemplate


DEFAULT_CONTENT_TYPE = 'application/json'


@dataclass
class ResponseDescriptor:
    """Effective response settings, tagged with the layer they came from."""

    source: str  # expectation, preset, default
    status_code: int = 200
    mode: str = 'basic'
    content_type: str = DEFAULT_CONTENT_TYPE
    body: str = ''
    script: str = ''
    label: str = ''

    @classmethod
    def from_layer(cls, source: str, layer: Dict[str, Any], status_code: Any = 200) -> 'ResponseDescriptor':
        try:
            status = int(status_code) if status_code not in (None, '') else 200
        except (TypeError, ValueError):
            status = 200
        return cls(
            source=source,
            status_code=status,
            mode=layer.get('responseMode') or 'basic',
            content_type=layer.get('responseType') or DEFAULT_CONTENT_TYPE,
            body=layer.get('responseBasic') or '',
            script=layer.get('responseAdvanced') or '',
            label=str(layer.get('name') or ''),
        )


def find_active_preset(rule: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the preset selected by ``activePresetId``, if any."""
    preset_id = rule.get('activePresetId')
    if preset_id in (None, ''):
        return None
    for preset in rule.get('responsePresets') or []:
        if str(preset.get('id')) == str(preset_id):
            return preset
    return None


def resolve_descriptor(rule: Dict[str, Any], request: Any) -> ResponseDescriptor:
    """
    Apply the override layers to a rule.

    Args:
        rule: Matched rule
        request: Request view used by expectation conditions

    Returns:
        ResponseDescriptor of the first applicable layer
    """
    expectation = find_expectation(rule.get('expectations') or [], request)
    if expectation is not None:
        return ResponseDescriptor.from_layer('expectation', expectation, expectation.get('statusCode'))

    preset = find_active_preset(rule)
    if preset is not None:
        return ResponseDescriptor.from_layer('preset', preset, preset.get('statusCode'))

    return ResponseDescriptor.from_layer('default', rule, 200)


def content_disposition(filename: str) -> str:
    """Build an attachment Content-Disposition for ``filename``."""
    try:
        filename.encode('ascii')
        return f'attachment; filename="{filename}"'
    except UnicodeEncodeError:
        return f"attachment; filename*=UTF-8''{quote(filename)}"


def apply_response_headers(response: Response, headers: List[Dict[str, Any]]) -> None:
    """Copy rule-declared ``{key, value}`` headers onto the response."""
    for header in headers or []:
        key = header.get('key')
        value = header.get('value')
        if key and value not in (None, ''):
            response.headers[str(key)] = str(value)


class ResponseResolver:
    """
    Resolves and renders rule responses.

    Example:
        resolver = ResponseResolver(sandbox, template)
        response = await resolver.respond(rule, request_view)
    """

    def __init__(self, sandbox: Optional[ScriptSandbox] = None, template: Optional[DataTemplate] = None):
        """
        Initialize resolver.

        Args:
            sandbox: Script sandbox for advanced mode
            template: Data template expander for basic JSON bodies
        """
        self.template = template or DataTemplate()
        self.sandbox = sandbox or ScriptSandbox(self.template)
        self.logger = logging.getLogger("rulemock.mock")

    async def respond(self, rule: Dict[str, Any], request: Any) -> Response:
        """
        Resolve and render the response for a matched rule.

        Raises:
            ClientError: Binary response misconfigured or file missing
            RenderError: Script or file read failure
        """
        descriptor = resolve_descriptor(rule, request)
        self.logger.debug(
            f"Rule {rule.get('id')} resolved from {descriptor.source} "
            f"({descriptor.mode}, {descriptor.status_code})"
        )
        response = await self.render(descriptor, rule, request)
        apply_response_headers(response, rule.get('responseHeaders'))
        return response

    async def render(self, descriptor: ResponseDescriptor, rule: Dict[str, Any], request: Any) -> Response:
        """Render a resolved descriptor into a response."""
        if descriptor.mode == 'advanced':
            return await self._render_script(descriptor, rule, request)
        if is_binary_content_type(descriptor.content_type):
            return await self._render_file(descriptor, rule)
        return self._render_text(descriptor, rule)

    async def _render_script(self, descriptor: ResponseDescriptor, rule: Dict[str, Any], request: Any) -> Response:
        label = rule.get('name') or f"{rule.get('method')} {rule.get('url')}"
        value = await self.sandbox.run(descriptor.script, request, label=label)
        try:
            content = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            raise RenderError(f"Script result is not JSON serializable: {e}")
        return Response(content=content, status_code=descriptor.status_code, media_type='application/json')

    async def _render_file(self, descriptor: ResponseDescriptor, rule: Dict[str, Any]) -> Response:
        file_path = rule.get('responseFile')
        if not file_path:
            raise ClientError(f"No response file configured for {descriptor.content_type} response", status_code=400)

        path = Path(file_path)
        if not path.is_file():
            raise ClientError(f"Response file not found: {file_path}", status_code=404)

        try:
            content = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise RenderError(f"Failed to read response file: {e}")

        return Response(
            content=content,
            status_code=descriptor.status_code,
            media_type=base_content_type(descriptor.content_type),
            headers={'Content-Disposition': content_disposition(path.name)},
        )

    def _render_text(self, descriptor: ResponseDescriptor, rule: Dict[str, Any]) -> Response:
        body = descriptor.body
        if rule.get('mockjsEnabled') and 'json' in base_content_type(descriptor.content_type):
            try:
                body = json.dumps(self.template.expand_text(body), ensure_ascii=False)
            except Exception as e:
                self.logger.warning(f"Data template expansion failed for rule {rule.get('id')}, sending raw body: {e}")
                body = descriptor.body

        return Response(content=body, status_code=descriptor.status_code, media_type=descriptor.content_type)
