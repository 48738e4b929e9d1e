"""
Tests for workbench/content_cleaner.py
"""
from workbench.content_cleaner import clean_code_content, clean_for_path, clean_jsx_content


class TestCleanCodeContent:
    def test_strips_request_logs(self):
        content = "const a = 1;\nGET /api/sandbox-status 200 in 12ms\nconst b = 2;\n"
        assert clean_code_content(content) == "const a = 1;\nconst b = 2;"

    def test_strips_compile_lines(self):
        content = "import React from 'react';\n✓ Compiled in 245ms\nexport default 1;"
        assert clean_code_content(content) == "import React from 'react';\nexport default 1;"

    def test_strips_route_prefix_lines(self):
        content = "a();\n[apply-ai-code-stream] Applying 3 files\nb();"
        assert clean_code_content(content) == "a();\nb();"

    def test_collapses_blank_runs(self):
        assert clean_code_content("a\n\n\n\n\nb") == "a\n\nb"

    def test_clean_content_untouched(self):
        content = "export const sum = (a, b) => a + b;"
        assert clean_code_content(content) == content


class TestCleanJsx:
    def test_repairs_images_declaration(self):
        content = "const images GET /api/x 200 in 3ms = [\n  '/a.png',\n];"
        assert clean_jsx_content(content).startswith("const images = [")

    def test_dispatch_by_extension(self):
        content = "const images GET = [1];"
        assert clean_for_path("src/Gallery.jsx", content) == "const images = [1];"
        assert clean_for_path("src/gallery.js", content) == content
