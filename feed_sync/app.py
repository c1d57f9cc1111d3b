"""Typer CLI entrypoint for feed-sync."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository
from .domain import Article, BatchResult, ContentType, FilterMode, FilterRule, FilterScope, Source, SourceMode
from .engine.filters import compile_rule_pattern
from .errors import FeedSyncError, FilterRuleError
from .events import get_event_bus
from .infra import SQLiteManager, SQLiteStore
from .logging_conf import available_source_logs, configure_logging, log_dir, tail_log
from .orchestrator import Orchestrator
from .scheduler import APSchedulerAdapter
from .subscriptions import SubscriptionService
from .sync.proxy_client import SYNC_MODES
from .ui import BatchProgress

app = typer.Typer(
    help="feed-sync 订阅同步命令行工具",
    no_args_is_help=True,
    rich_markup_mode=None,
)
source_app = typer.Typer(name="source", help="订阅源管理命令", no_args_is_help=True, rich_markup_mode=None)
rule_app = typer.Typer(name="rule", help="过滤规则管理命令", no_args_is_help=True, rich_markup_mode=None)
article_app = typer.Typer(name="article", help="文章查看命令", no_args_is_help=True, rich_markup_mode=None)
sync_app = typer.Typer(name="sync", help="代理服务器同步命令", no_args_is_help=True, rich_markup_mode=None)
log_app = typer.Typer(name="log", help="日志查看命令", no_args_is_help=True, rich_markup_mode=None)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    storage: SQLiteManager
    store: SQLiteStore
    orchestrator: Orchestrator
    subscriptions: SubscriptionService
    scheduler: APSchedulerAdapter


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    global_config = repository.load_global_config()
    storage = SQLiteManager()
    bus = get_event_bus()
    orchestrator = Orchestrator.from_repository(repository, storage=storage, bus=bus)
    proxy_client = orchestrator.proxy_client if orchestrator.proxy_client.is_configured else None
    subscriptions = SubscriptionService(
        orchestrator.store,
        orchestrator.fetcher,
        proxy_client=proxy_client,
        bus=bus,
        default_max_articles=global_config.default_max_articles,
    )
    return AppState(
        repository=repository,
        storage=storage,
        store=orchestrator.store,
        orchestrator=orchestrator,
        subscriptions=subscriptions,
        scheduler=APSchedulerAdapter(),
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _fail(exc: Exception) -> None:
    console.print(f"操作失败：{exc}", style="red")
    raise typer.Exit(code=1)


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _render_sources_table(sources: Sequence[Source]) -> Table:
    table = Table(title=f"订阅源总览 · 共 {len(sources)} 个", box=box.SIMPLE_HEAD, show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("标题", style="bold")
    table.add_column("模式", style="magenta")
    table.add_column("内容", style="magenta")
    table.add_column("文章/未读", style="green", justify="right")
    table.add_column("错误", style="red", justify="right")
    table.add_column("最近更新", style="yellow")
    table.add_column("地址", style="dim", overflow="fold")
    for source in sources:
        table.add_row(
            str(source.id),
            source.name,
            source.mode.value,
            source.content_type.value,
            f"{source.article_count}/{source.unread_count}",
            str(source.error_count),
            _format_time(source.last_updated or source.last_fetch_at),
            source.url,
        )
    return table


def _render_rules_table(rules: Sequence[FilterRule]) -> Table:
    table = Table(title="过滤规则", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("关键词", style="bold")
    table.add_column("正则", style="magenta")
    table.add_column("模式", style="green")
    table.add_column("范围", style="yellow")
    for rule in rules:
        scope = rule.scope.value
        if rule.scope is FilterScope.SPECIFIC:
            scope = f"specific ({', '.join(str(source_id) for source_id in rule.source_ids)})"
        table.add_row(str(rule.id), rule.keyword, "是" if rule.is_regex else "否", rule.mode.value, scope)
    return table


def _render_articles_table(articles: Sequence[Article]) -> Table:
    table = Table(title=f"文章列表 · 共 {len(articles)} 篇", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("标题", style="bold", overflow="fold")
    table.add_column("来源", style="magenta")
    table.add_column("发布时间", style="yellow")
    table.add_column("阅读", style="green", justify="right")
    table.add_column("状态", style="dim")
    for article in articles:
        table.add_row(
            str(article.id),
            article.title,
            article.source_name,
            _format_time(article.published_at),
            f"{article.reading_time} 分钟",
            "已读" if article.is_read else "未读",
        )
    return table


def _render_batch_summary(result: BatchResult) -> None:
    style = "green" if result.failed_count == 0 else "yellow"
    console.print(
        f"刷新完成：成功 {result.success_count} · 失败 {result.failed_count} · 新文章 {result.total_articles}",
        style=style,
    )
    if result.errors:
        table = Table(title="失败明细", box=box.SIMPLE_HEAD)
        table.add_column("来源", style="cyan")
        table.add_column("错误", style="red", overflow="fold")
        for name, message in result.errors:
            table.add_row(name, message)
        console.print(table)


app.add_typer(source_app, name="source", help="管理订阅源（list/add/remove/refresh 等）")
app.add_typer(rule_app, name="rule", help="管理关键词过滤规则")
app.add_typer(article_app, name="article", help="查看与标记文章")
app.add_typer(sync_app, name="sync", help="与代理服务器同步")
app.add_typer(log_app, name="log", help="查看或跟踪日志文件")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="开启调试日志", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


# ----------------------------------------------------------------------
# source
# ----------------------------------------------------------------------
@source_app.command("list", help="查看订阅源清单。")
def source_list(
    ctx: typer.Context,
    active_only: bool = typer.Option(False, "--active", help="仅显示启用中的订阅源。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    sources = state.store.list_sources(active_only=active_only)
    if not sources:
        console.print("暂无订阅源，先使用 `feed-sync source add` 添加。", style="yellow")
        return
    console.print(_render_sources_table(sources))


@source_app.command("add", help="添加新的订阅源。")
def source_add(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="RSS/Atom 地址或 rsshub:// 路径。"),
    title: Optional[str] = typer.Option(None, "--title", help="自定义标题（默认使用订阅源标题）。"),
    mode: SourceMode = typer.Option(SourceMode.DIRECT, "--mode", help="抓取模式：direct 或 proxy。"),
    content_type: ContentType = typer.Option(
        ContentType.IMAGE_TEXT, "--content-type", help="内容类型：text 或 image_text。"
    ),
    max_articles: Optional[int] = typer.Option(None, "--max-articles", help="每次刷新最多处理的文章数。"),
) -> None:
    state = _get_state(ctx)
    try:
        source = state.subscriptions.add_source(
            url, title, mode=mode, content_type=content_type, max_articles=max_articles
        )
    except FeedSyncError as exc:
        _fail(exc)
    console.print(f"订阅源 `{source.name}` 已添加（ID {source.id}）。", style="green")


@source_app.command("remove", help="删除订阅源及其文章。")
def source_remove(
    ctx: typer.Context,
    source_id: int = typer.Argument(..., help="要删除的订阅源 ID。"),
    yes: bool = typer.Option(False, "--yes", help="跳过删除确认提示。", is_flag=True),
) -> None:
    state = _get_state(ctx)
    try:
        source = state.store.get_source(source_id)
    except FeedSyncError as exc:
        _fail(exc)
    if not yes:
        confirm = typer.confirm(f"确认删除 `{source.name}` 及其全部文章？", default=False)
        if not confirm:
            console.print("已取消删除操作。", style="yellow")
            raise typer.Exit(code=0)
    removed = state.subscriptions.remove_source(source_id)
    console.print(f"订阅源 `{source.name}` 已删除，清理文章 {removed} 篇。", style="green")


@source_app.command("refresh", help="立即刷新指定订阅源。")
def source_refresh(
    ctx: typer.Context,
    source_ids: List[int] = typer.Argument(..., help="订阅源 ID，可指定多个。"),
) -> None:
    state = _get_state(ctx)
    result = state.orchestrator.refresh_sources(source_ids)
    _render_batch_summary(result)
    if result.success_count == 0 and result.failed_count:
        raise typer.Exit(code=1)


@source_app.command("refresh-all", help="并发刷新全部启用的订阅源。")
def source_refresh_all(
    ctx: typer.Context,
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="并发数（默认读取全局配置）。"),
    progress: bool = typer.Option(True, "--progress/--no-progress", help="是否显示进度条。"),
) -> None:
    state = _get_state(ctx)
    enabled = progress and state.orchestrator.global_config.enable_progress_bar
    with BatchProgress(enabled=enabled, console=console) as reporter:
        result = state.orchestrator.refresh_all(
            max_concurrent=concurrency,
            on_progress=reporter,
            on_error=reporter.record_error,
        )
    _render_batch_summary(result)


@source_app.command("reorder", help="按给定顺序重新排列订阅源。")
def source_reorder(
    ctx: typer.Context,
    source_ids: List[int] = typer.Argument(..., help="按新顺序排列的订阅源 ID。"),
) -> None:
    state = _get_state(ctx)
    state.store.update_sources_order(source_ids)
    console.print("订阅源顺序已更新。", style="green")


# ----------------------------------------------------------------------
# rule
# ----------------------------------------------------------------------
@rule_app.command("list", help="查看全部过滤规则。")
def rule_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    rules = state.store.list_rules()
    if not rules:
        console.print("暂无过滤规则。", style="dim")
        return
    console.print(_render_rules_table(rules))


@rule_app.command("add", help="添加过滤规则。")
def rule_add(
    ctx: typer.Context,
    keyword: str = typer.Argument(..., help="关键词或正则表达式。"),
    regex: bool = typer.Option(False, "--regex", help="按正则表达式匹配。", is_flag=True),
    mode: FilterMode = typer.Option(FilterMode.EXCLUDE, "--mode", help="include 或 exclude。"),
    source: Optional[List[int]] = typer.Option(None, "--source", help="仅作用于指定订阅源，可重复。"),
) -> None:
    state = _get_state(ctx)
    scope = FilterScope.SPECIFIC if source else FilterScope.GLOBAL
    try:
        if regex:
            compile_rule_pattern(keyword)
        rule = state.store.create_rule(keyword, is_regex=regex, mode=mode, scope=scope, source_ids=source or [])
    except (ValueError, FilterRuleError) as exc:
        _fail(exc)
    console.print(f"过滤规则 #{rule.id} 已添加。", style="green")


@rule_app.command("remove", help="删除过滤规则。")
def rule_remove(ctx: typer.Context, rule_id: int = typer.Argument(..., help="规则 ID。")) -> None:
    state = _get_state(ctx)
    if not state.store.delete_rule(rule_id):
        console.print(f"未找到过滤规则 #{rule_id}。", style="red")
        raise typer.Exit(code=1)
    console.print(f"过滤规则 #{rule_id} 已删除。", style="green")


# ----------------------------------------------------------------------
# article
# ----------------------------------------------------------------------
@article_app.command("list", help="查看最近的文章。")
def article_list(
    ctx: typer.Context,
    source_id: Optional[int] = typer.Option(None, "--source", help="仅显示指定订阅源。"),
    unread: bool = typer.Option(False, "--unread", help="仅显示未读文章。", is_flag=True),
    limit: int = typer.Option(20, "--limit", help="显示数量上限。"),
) -> None:
    state = _get_state(ctx)
    articles = state.store.list_articles(source_id, unread_only=unread, limit=limit)
    if not articles:
        console.print("暂无文章。", style="dim")
        return
    console.print(_render_articles_table(articles))


@article_app.command("read", help="显示文章摘要并标记为已读。")
def article_read(ctx: typer.Context, article_id: int = typer.Argument(..., help="文章 ID。")) -> None:
    state = _get_state(ctx)
    article = state.store.get_article(article_id)
    if article is None:
        console.print(f"未找到文章 #{article_id}。", style="red")
        raise typer.Exit(code=1)
    console.print(article.title, style="bold cyan")
    console.print(f"{article.source_name} · {_format_time(article.published_at)} · {article.url}", style="dim")
    if article.image_url:
        console.print(f"配图：{article.image_url}", style="dim")
    console.print(article.summary or "（无摘要）")
    state.store.mark_read(article_id)


# ----------------------------------------------------------------------
# sync
# ----------------------------------------------------------------------
@sync_app.command("pull", help="从代理服务器拉取待同步的文章。")
def sync_pull(
    ctx: typer.Context,
    mode: str = typer.Option("sync", "--mode", help="同步模式：sync 或 refresh。"),
) -> None:
    state = _get_state(ctx)
    if mode not in SYNC_MODES:
        console.print(f"未知的同步模式：{mode}（可选 {', '.join(SYNC_MODES)}）", style="red")
        raise typer.Exit(code=1)
    if not state.orchestrator.proxy_client.is_configured:
        console.print("未配置代理服务器，请在 config.yaml 中设置 proxy_server。", style="yellow")
        raise typer.Exit(code=1)
    result = state.orchestrator.pull_from_server(mode=mode)
    _render_batch_summary(result)
    if result.failed_count:
        raise typer.Exit(code=1)


@sync_app.command("source", help="从代理服务器拉取单个订阅源的文章。")
def sync_source(ctx: typer.Context, source_id: int = typer.Argument(..., help="订阅源 ID。")) -> None:
    state = _get_state(ctx)
    try:
        source = state.store.get_source(source_id)
        saved = state.orchestrator.proxy_client.sync_source(source)
    except FeedSyncError as exc:
        _fail(exc)
    console.print(f"`{source.name}` 同步完成，新文章 {saved} 篇。", style="green")


# ----------------------------------------------------------------------
# log
# ----------------------------------------------------------------------
@log_app.command("list", help="列出可用的日志文件。")
def log_list() -> None:
    logs = list(available_source_logs())
    console.print("日志文件：", style="cyan")
    if not logs:
        console.print("暂未生成任何订阅源日志。", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("文件名", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("show", help="查看指定日志的最近内容。")
def log_show(
    name: Optional[str] = typer.Option(None, "--source", help="订阅源日志名（为空则展示全局日志）。"),
    tail: int = typer.Option(100, "--tail", help="显示最近 N 行内容。"),
) -> None:
    if name:
        path = log_dir() / "sources" / f"{name.removesuffix('.log')}.log"
    else:
        path = log_dir() / "feed_sync.log"
    lines = tail_log(path, tail)
    if not lines:
        console.print("暂无日志信息，请稍后再试。", style="dim")
        return
    header = f"{'源日志' if name else '全局日志'} · 最近 {len(lines)} 行"
    console.print(header, style="cyan")
    console.print("".join(lines))


# ----------------------------------------------------------------------
# watch
# ----------------------------------------------------------------------
@app.command("watch", help="按固定间隔在后台刷新全部订阅源，Ctrl+C 退出。")
def watch(
    ctx: typer.Context,
    interval: Optional[int] = typer.Option(None, "--interval", help="刷新间隔（分钟，默认读取全局配置）。"),
) -> None:
    state = _get_state(ctx)
    minutes = interval or state.orchestrator.global_config.refresh_interval_minutes
    if not minutes or minutes <= 0:
        console.print("请通过 --interval 或 refresh_interval_minutes 指定刷新间隔。", style="red")
        raise typer.Exit(code=1)
    state.scheduler.schedule_refresh(state.orchestrator, minutes)
    state.scheduler.start()
    console.print(f"已启动定时刷新，每 {minutes} 分钟执行一次。", style="green")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("正在停止定时刷新…", style="yellow")
    finally:
        state.scheduler.shutdown()
        state.orchestrator.close()


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
