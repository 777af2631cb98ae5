import argparse
import asyncio
import json
import sys

import httpx
from rich.console import Console
from rich.live import Live
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from context_search.cache import MemoryStore, RemoteStore, TwoTierCache
from context_search.config import Settings, save_config
from context_search.embeddings import EmbeddingClient, SemanticFilter
from context_search.errors import ContextSearchError
from context_search.fetching import RedditSearcher
from context_search.llm import GroqChatClient, QueryExpander, RelevanceScorer
from context_search.logging_config import configure_logging
from context_search.pipeline import ContextSearchPipeline, validate_query
from context_search.usage import UsageEstimate, UsagePredictor

console = Console()


def usage_table(est: UsageEstimate) -> Table:
    table = Table(title="Groq request budget (estimated)", show_header=False)
    table.add_column("field", style="dim")
    table.add_column("value")
    color = "green" if est.percent_used < 50 else "yellow" if est.percent_used < 90 else "red"
    table.add_row("Remaining", f"[{color}]{est.remaining}/{est.limit}[/{color}]")
    table.add_row("Used", f"{est.percent_used}%")
    table.add_row("Resets in", "now" if est.recovered else f"{est.reset_in_seconds}s")
    return table


async def watch_usage(predictor: UsagePredictor) -> None:
    est = predictor.estimate()
    if est is None:
        return
    with Live(usage_table(est), console=console, refresh_per_second=4) as live:
        await predictor.run(lambda e: live.update(usage_table(e)))


async def main(args):
    settings = Settings.from_env()
    configure_logging(args.log_level or settings.log_level)

    api_key = args.api_key or settings.groq_api_key
    if not api_key:
        console.print(
            "[red]Error: No Groq API key. Set GROQ_API_KEY or save one with --set-api-key.[/]"
        )
        return 1

    try:
        query = validate_query(args.query)
    except ContextSearchError as e:
        console.print(f"[red]Error: {e.message}[/]")
        return 2

    async with httpx.AsyncClient(follow_redirects=True) as http:
        remote = (
            RemoteStore(settings.redis_rest_url, settings.redis_rest_token, client=http)
            if settings.remote_cache_enabled
            else None
        )
        cache = TwoTierCache(MemoryStore(), remote)
        chat = GroqChatClient(api_key, client=http)
        searcher = RedditSearcher(client=http)
        pipeline = ContextSearchPipeline(
            searcher=searcher,
            expander=QueryExpander(chat),
            semantic_filter=SemanticFilter(
                EmbeddingClient(settings.hf_api_key, client=http),
                fail_closed=not (args.fail_open or settings.semantic_fail_open),
            ),
            scorer=RelevanceScorer(chat),
            cache=cache,
        )

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as progress:
            progress.add_task(f"[cyan]Searching Reddit for {query!r}...", total=None)
            try:
                response = await pipeline.run(query)
            except ContextSearchError as e:
                console.print(f"[red]Search failed: {e.message}[/]")
                if e.details:
                    console.print(f"[dim]{e.details}[/]")
                await cache.close()
                return 1

        comments: dict[str, str] = {}
        if args.comments > 0:
            targets = [p for p in response.posts[: args.comments] if p.permalink]
            bodies = await asyncio.gather(
                *(searcher.get_details(p.permalink or "") for p in targets)
            )
            comments = {p.id: body for p, body in zip(targets, bodies) if body}

        await cache.close()

    if args.json:
        print(json.dumps(response.to_dict(), indent=2))
    else:
        stats = response.filter_stats
        console.print(
            f"\n[bold green]{stats.output} relevant posts for {query!r}[/]"
            f"{' [dim](cached)[/]' if response.cached else ''}"
        )
        console.print(
            f"[dim]Queries: {', '.join(response.query_context)}[/]\n"
            f"[dim]{stats.input} unique -> {stats.semantic_pass} semantic -> "
            f"{stats.analyzed} analyzed -> {stats.output} kept[/]\n"
        )

        for post in response.posts[: args.top]:
            score = post.relevance_score or 0.0
            score_color = "green" if score >= 8 else "yellow" if score >= 7 else "white"
            console.print(
                f"[{score_color}]{score:4.1f}[/{score_color}] "
                f"[dim]({post.upvotes:5d}^ {post.comments:4d}c)[/dim] "
                f"[bold]{post.title}[/bold] [dim]r/{post.subreddit}[/dim]"
            )
            console.print(f"   [dim cyan]Link:[/] {post.link}")
            if post.frequency_bonus:
                console.print(f"   [dim italic]Found by {post.frequency_bonus + 1} queries[/]")
            if post.id in comments:
                snippet = comments[post.id].replace("\n", " ").strip()[:200]
                console.print(f"   [dim]Top comments: {snippet}...[/]")
            console.print("")

    if args.watch_usage and response.rate_limit is not None:
        predictor = UsagePredictor()
        predictor.sync(response.rate_limit)
        await watch_usage(predictor)
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reddit Context Search")
    parser.add_argument("query", nargs="?", help="What to search Reddit for")
    parser.add_argument(
        "--top",
        type=int,
        default=10,
        help="Number of top results to show (default: 10)",
    )
    parser.add_argument(
        "--comments",
        type=int,
        default=0,
        help="Fetch top comments for the first N results (default: 0)",
    )
    parser.add_argument("--json", action="store_true", help="Print the raw JSON response")
    parser.add_argument(
        "--fail-open",
        action="store_true",
        help="Keep candidates unscored if the embedding service is down",
    )
    parser.add_argument(
        "--watch-usage",
        action="store_true",
        help="Show the estimated Groq request budget until it recovers",
    )
    parser.add_argument("--api-key", type=str, help="Groq API key for this run")
    parser.add_argument(
        "--set-api-key", type=str, metavar="KEY", help="Save a Groq API key and exit"
    )
    parser.add_argument("--log-level", type=str, default=None, help="Log level")

    args = parser.parse_args()

    if args.set_api_key:
        save_config("groq_api_key", args.set_api_key.strip())
        console.print("[green]API key saved.[/]")
        sys.exit(0)

    if not args.query:
        parser.print_usage()
        sys.exit(2)

    sys.exit(asyncio.run(main(args)))
