# Format-specific document parsers: raw text -> title + body + code blocks.
# The sync pipeline uses the first parser whose supports() accepts the path.

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import yaml
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


@dataclass
class CodeBlock:
    language: str
    code: str
    description: str = ""


@dataclass
class ParsedDocument:
    title: str
    content: str
    code_blocks: List[CodeBlock] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)


def _stem(path: str) -> str:
    name = posixpath.basename(path)
    return name.rsplit('.', 1)[0] if '.' in name else name


def _preceding_text(lines: List[str], index: int) -> str:
    """Nearest non-empty, non-fence line before ``index``; used as a code block caption."""
    for line in reversed(lines[:index]):
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith(('```', '~~~', '----', '[source')):
            return ""
        return stripped.lstrip('#').strip()
    return ""


class DocumentParser:
    extensions: Tuple[str, ...] = ()
    doc_type = "text"

    def supports(self, path: str) -> bool:
        return path.lower().endswith(self.extensions)

    def parse(self, raw_text: str, path: str) -> ParsedDocument:
        raise NotImplementedError


class MarkdownParser(DocumentParser):
    extensions = ('.md', '.markdown')
    doc_type = "markdown"

    FENCE = re.compile(r'^(`{3,}|~{3,})\s*([\w+#.-]*)')

    def _split_front_matter(self, text: str) -> Tuple[Dict[str, str], str]:
        if not text.startswith('---'):
            return {}, text
        end = text.find('\n---', 3)
        if end == -1:
            return {}, text
        try:
            data = yaml.safe_load(text[3:end]) or {}
        except yaml.YAMLError as e:
            logger.debug(f"Ignoring unparsable front matter: {e}")
            return {}, text
        if not isinstance(data, dict):
            return {}, text
        body = text[end + 4:].lstrip('\n')
        return {str(k): str(v) for k, v in data.items()}, body

    def _code_blocks(self, body: str) -> List[CodeBlock]:
        lines = body.splitlines()
        blocks = []
        i = 0
        while i < len(lines):
            match = self.FENCE.match(lines[i].strip())
            if not match:
                i += 1
                continue
            fence, language = match.group(1), match.group(2)
            start = i
            i += 1
            code_lines = []
            while i < len(lines) and not lines[i].strip().startswith(fence):
                code_lines.append(lines[i])
                i += 1
            i += 1
            code = "\n".join(code_lines).strip('\n')
            if code.strip():
                blocks.append(CodeBlock(language=language.lower() or "text", code=code,
                                        description=_preceding_text(lines, start)))
        return blocks

    def parse(self, raw_text: str, path: str) -> ParsedDocument:
        metadata, body = self._split_front_matter(raw_text or "")
        match = re.search(r'^#\s+(.+?)\s*#*\s*$', body, re.MULTILINE)
        title = metadata.get('title') or (match.group(1).strip() if match else _stem(path))
        return ParsedDocument(title=title, content=body, code_blocks=self._code_blocks(body),
                              metadata=metadata)


class AsciiDocParser(DocumentParser):
    extensions = ('.adoc', '.asciidoc')
    doc_type = "asciidoc"

    SOURCE_ATTR = re.compile(r'^\[source\s*(?:,\s*([\w+#.-]+))?.*\]$')

    def parse(self, raw_text: str, path: str) -> ParsedDocument:
        text = raw_text or ""
        match = re.search(r'^=\s+(.+)$', text, re.MULTILINE)
        title = match.group(1).strip() if match else _stem(path)

        lines = text.splitlines()
        blocks = []
        i = 0
        while i < len(lines):
            attr = self.SOURCE_ATTR.match(lines[i].strip())
            if not attr or i + 1 >= len(lines) or not lines[i + 1].strip().startswith('----'):
                i += 1
                continue
            language = (attr.group(1) or "text").lower()
            start = i
            i += 2
            code_lines = []
            while i < len(lines) and not lines[i].strip().startswith('----'):
                code_lines.append(lines[i])
                i += 1
            i += 1
            code = "\n".join(code_lines)
            if code.strip():
                blocks.append(CodeBlock(language=language, code=code,
                                        description=_preceding_text(lines, start)))
        return ParsedDocument(title=title, content=text, code_blocks=blocks)


class HtmlParser(DocumentParser):
    extensions = ('.html', '.htm')
    doc_type = "html"

    def parse(self, raw_text: str, path: str) -> ParsedDocument:
        soup = BeautifulSoup(raw_text or "", "html.parser")

        title = None
        if soup.title and soup.title.get_text(strip=True):
            title = soup.title.get_text(strip=True)
        else:
            h1 = soup.find('h1')
            if h1 and h1.get_text(strip=True):
                title = h1.get_text(strip=True)

        blocks = []
        for pre in soup.find_all('pre'):
            code_tag = pre.find('code') or pre
            language = "text"
            for cls in (code_tag.get('class') or []) + (pre.get('class') or []):
                if cls.startswith(('language-', 'lang-')):
                    language = cls.split('-', 1)[1].lower()
                    break
            code = code_tag.get_text()
            if not code.strip():
                continue
            caption = pre.find_previous(['p', 'h1', 'h2', 'h3', 'h4'])
            blocks.append(CodeBlock(language=language, code=code.strip('\n'),
                                    description=caption.get_text(" ", strip=True) if caption else ""))

        for tag in soup(['script', 'style', 'nav']):
            tag.decompose()
        body = soup.get_text("\n", strip=True)
        return ParsedDocument(title=title or _stem(path), content=body, code_blocks=blocks)


class TextParser(DocumentParser):
    """Plain text and reStructuredText; the title is an underlined first heading if present."""
    extensions = ('.txt', '.rst')
    doc_type = "text"

    UNDERLINE = re.compile(r'^([=\-~^"*#+])\1{2,}\s*$')

    def parse(self, raw_text: str, path: str) -> ParsedDocument:
        text = raw_text or ""
        lines = text.splitlines()
        title = _stem(path)
        for i, line in enumerate(lines[:-1]):
            if line.strip() and self.UNDERLINE.match(lines[i + 1].strip()) and not self.UNDERLINE.match(line.strip()):
                title = line.strip()
                break

        blocks = []
        if path.lower().endswith('.rst'):
            for match in re.finditer(r'^\.\. code-block::\s*(\S*)\s*\n((?:\n|[ \t]+.*\n?)+)', text, re.MULTILINE):
                code = "\n".join(l[4:] if l.startswith('    ') else l.strip() for l in match.group(2).splitlines())
                if code.strip():
                    blocks.append(CodeBlock(language=match.group(1).lower() or "text", code=code.strip('\n')))
        return ParsedDocument(title=title, content=text, code_blocks=blocks)


def default_parsers() -> List[DocumentParser]:
    return [MarkdownParser(), AsciiDocParser(), HtmlParser(), TextParser()]


def find_parser(parsers: Sequence[DocumentParser], path: str) -> Optional[DocumentParser]:
    """First parser that supports the path, or None."""
    for parser in parsers:
        if parser.supports(path):
            return parser
    return None
