"""Tool wrappers for the recall agent.

Each tool takes simple string params and returns a concise listing or page
text. The factory closes over one FactStore; tools only ever see pages at or
below SUMMARY level.
"""

import logging
import re
from typing import List

from ...models.fact_store import MEMORY_CATEGORIES, FactStore
from ..llm.context_formatter import category_labels, format_page_listing
from .tool import Tool, ToolParameter

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def day_number(label: str, default: int = 0) -> int:
    """`"D7"` -> 7; labels without digits map to `default`."""
    digits = _NON_DIGITS.sub("", label or "")
    return int(digits) if digits else default


def create_recall_tools(store: FactStore) -> List[Tool]:
    """Create the recall agent tools, closing over the conversation's store."""
    pages = store.retrievable_pages()

    # --- Tool 1: search_by_category ---
    async def search_by_category(category: str = "") -> str:
        matched = [p for p in pages if category in p.categories]
        if not matched:
            return f"没有找到分类为\"{MEMORY_CATEGORIES.get(category, category)}\"的页面。"
        return "\n".join(format_page_listing(p) for p in matched)

    # --- Tool 2: search_by_timerange ---
    async def search_by_timerange(d1: str = "", d2: str = "") -> str:
        start = day_number(str(d1), 0)
        end = day_number(str(d2), 9999)
        matched = [p for p in pages if start <= day_number(p.day, 0) <= end]
        if not matched:
            return f"D{start}-D{end}之间没有找到页面。"
        return "\n".join(format_page_listing(p) for p in matched)

    # --- Tool 3: search_by_keyword ---
    async def search_by_keyword(keyword: str = "") -> str:
        kw = str(keyword).lower()
        matched = [
            p for p in pages
            if any(kw in k.lower() for k in p.keywords) or kw in p.title.lower()
        ]
        if not matched:
            return f"没有找到关键词\"{keyword}\"相关的页面。"
        return "\n".join(format_page_listing(p) for p in matched)

    # --- Tool 4: read_story_page ---
    async def read_story_page(page_id: str = "") -> str:
        page = store.get_page(page_id)
        if page is None:
            return f"页面 {page_id} 不存在。"
        return f"{format_page_listing(page)} | 分类: {category_labels(page)}\n{page.content}"

    category_help = ", ".join(f"{key}({label})" for key, label in MEMORY_CATEGORIES.items())
    tools = [
        Tool(
            name="search_by_category",
            description=f"按语义分类搜索记忆页面。分类: {category_help}",
            parameters=[
                ToolParameter("category", "string", "语义分类", enum=list(MEMORY_CATEGORIES)),
            ],
            func=search_by_category,
        ),
        Tool(
            name="search_by_timerange",
            description="按时间范围搜索记忆页面。",
            parameters=[
                ToolParameter("d1", "string", "起始天数，如 \"D3\""),
                ToolParameter("d2", "string", "结束天数，如 \"D7\""),
            ],
            func=search_by_timerange,
        ),
        Tool(
            name="search_by_keyword",
            description="按关键词搜索记忆页面标题和关键词。",
            parameters=[
                ToolParameter("keyword", "string", "搜索关键词"),
            ],
            func=search_by_keyword,
        ),
    ]

    # Only offered when there is something to read
    if pages:
        tools.append(Tool(
            name="read_story_page",
            description="读取一个记忆页面的完整内容。用于读取搜索发现的、不在候选列表中的页面。",
            parameters=[
                ToolParameter("page_id", "string", "故事页ID", enum=[p.id for p in pages]),
            ],
            func=read_story_page,
        ))

    return tools
