"""CLI entrypoint for the literature-review pipeline and the knowledge base."""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

from aggregation import SOURCE_TYPES, AggregationEngine
from article_analyzer import ArticleAnalyzer
from config import Settings
from errors import KnowledgeStoreError, PipelineError
from filters import SORT_ORDERS, ArticleFilter, filter_articles, sort_articles
from knowledge_store import KnowledgeStore
from llm_client import build_llm_client
from models import ARTICLE_TYPES, Report, ResearchRequest
from orchestrator import Phase, PipelineEvent, PipelineOrchestrator
from pubmed_client import PubMedClient


def normalize_tags(tags: list[str]) -> list[str]:
    """Strip command-line tags and drop blanks and repeats, keeping first-seen order."""
    return list(dict.fromkeys(tag.strip() for tag in tags if tag.strip()))


def parse_args(argv: list[str] | None = None, settings: Settings | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    settings = settings or Settings()
    parser = argparse.ArgumentParser(description="AI-assisted PubMed literature review")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    parser.add_argument(
        "--store",
        default=settings.knowledge_store_path,
        help="Knowledge base JSON file (default: KNOWLEDGE_STORE_PATH)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    research = commands.add_parser("research", help="Run the full research pipeline for a topic")
    research.add_argument("topic", help="Free-text research topic")
    research.add_argument(
        "--date-range",
        default=settings.default_date_range,
        help="'any' or number of years back (default: %(default)s)",
    )
    research.add_argument(
        "--type",
        dest="article_types",
        action="append",
        choices=ARTICLE_TYPES,
        help="Restrict to an article type; repeat for several",
    )
    research.add_argument("--focus", default=settings.default_synthesis_focus, help="Synthesis focus")
    research.add_argument("--max-articles", type=int, default=settings.default_max_articles_to_scan)
    research.add_argument("--top-n", type=int, default=settings.default_top_n)
    research.add_argument("--no-save", action="store_true", help="Do not save the report to the knowledge base")

    analyze = commands.add_parser("analyze-article", help="Analyze one article by PMID, PubMed URL or DOI")
    analyze.add_argument("identifier")
    analyze.add_argument("--no-save", action="store_true")

    kb = commands.add_parser("kb", help="Knowledge base maintenance")
    kb_commands = kb.add_subparsers(dest="kb_command", required=True)
    kb_commands.add_parser("list", help="List entries, newest first")
    recent = kb_commands.add_parser("recent", help="Show the most recent research topics")
    recent.add_argument("--count", type=int, default=5)

    articles = kb_commands.add_parser("articles", help="Show the de-duplicated article view")
    articles.add_argument("--source", choices=sorted(SOURCE_TYPES), default="all")
    articles.add_argument("--search", default="")
    articles.add_argument("--topic", action="append", default=[])
    articles.add_argument("--tag", action="append", default=[])
    articles.add_argument("--type", dest="article_types", action="append", default=[])
    articles.add_argument("--journal", action="append", default=[])
    articles.add_argument("--open-access", action="store_true")
    articles.add_argument("--sort", choices=sorted(SORT_ORDERS), default="relevance")

    kb_commands.add_parser("merge", help="Merge duplicate articles across entries")

    prune = kb_commands.add_parser("prune", help="Delete articles scoring below a threshold")
    prune.add_argument("threshold", type=int)

    tag = kb_commands.add_parser("tag", help="Replace the custom tags of an article everywhere")
    tag.add_argument("identifier")
    tag.add_argument("tags", nargs="*")

    delete = kb_commands.add_parser("delete", help="Delete articles from every entry")
    delete.add_argument("identifiers", nargs="+")

    rename = kb_commands.add_parser("rename", help="Rename an entry")
    rename.add_argument("entry_id")
    rename.add_argument("title")

    clear = kb_commands.add_parser("clear", help="Delete every entry")
    clear.add_argument("--yes", action="store_true", help="Confirm clearing the knowledge base")
    return parser.parse_args(argv)


def run_research(args: argparse.Namespace, settings: Settings, store: KnowledgeStore) -> int:
    request = ResearchRequest(
        research_topic=args.topic,
        date_range=args.date_range,
        article_types=tuple(args.article_types or settings.default_article_types),
        synthesis_focus=args.focus,
        max_articles_to_scan=args.max_articles,
        top_n_to_synthesize=args.top_n,
    )
    orchestrator = PipelineOrchestrator.from_settings(settings)

    def on_event(event: PipelineEvent) -> None:
        if event.text is not None:
            sys.stdout.write(event.text)
            sys.stdout.flush()
            return
        logging.info("%s", event.label)
        if event.phase is Phase.STREAMING_SYNTHESIS and event.report is not None:
            print_ranked(event.report)

    report = orchestrator.run(request, on_event=on_event)
    sys.stdout.write("\n")

    if settings.auto_save_reports and not args.no_save:
        entry = store.save_report(request, report)
        logging.info("Saved report to knowledge base: entry_id=%s", entry.id)
    return 0


def run_analyze_article(args: argparse.Namespace, settings: Settings, store: KnowledgeStore) -> int:
    analyzer = ArticleAnalyzer(build_llm_client(settings), PubMedClient.from_settings(settings), settings)
    article = analyzer.analyze(args.identifier)
    print(f"[{article.relevance_score:>3}] {article.identifier}  {article.title}")
    print(f"      {article.article_type or 'Unclassified'} | {', '.join(article.keywords)}")
    print(f"      {article.relevance_explanation}")
    if not args.no_save:
        entry = store.add_single_article_report(article)
        logging.info("Saved single-article report: entry_id=%s", entry.id)
    return 0


def run_kb(args: argparse.Namespace, store: KnowledgeStore) -> int:
    engine = AggregationEngine(store)
    command = args.kb_command

    if command == "list":
        for entry in store.list_entries():
            print(
                f"{entry.id}  {entry.created_at:%Y-%m-%d %H:%M}  {entry.source_type:<8}  "
                f"{len(entry.articles):>3} articles  {entry.title}"
            )
    elif command == "recent":
        for entry in store.recent_research_entries(args.count):
            print(f"{entry.created_at:%Y-%m-%d}  {entry.request.research_topic}  ({len(entry.articles)} articles)")
    elif command == "articles":
        flt = ArticleFilter(
            search_term=args.search,
            topics=tuple(args.topic),
            tags=tuple(args.tag),
            article_types=tuple(args.article_types),
            journals=tuple(args.journal),
            open_access_only=args.open_access,
        )
        rows = sort_articles(filter_articles(engine.get_articles(args.source), flt), args.sort)
        for row in rows:
            tags = f"  [{', '.join(row.article.custom_tags)}]" if row.article.custom_tags else ""
            print(f"[{row.relevance_score:>3}] {row.identifier}  {row.article.title}  <- {row.source_title}{tags}")
        logging.info("%s articles shown", len(rows))
    elif command == "merge":
        merged = engine.merge_duplicates()
        print(f"{merged} duplicate article entries merged." if merged else "No duplicate articles found.")
    elif command == "prune":
        pruned = engine.prune_by_relevance(args.threshold)
        print(f"{pruned} article(s) pruned." if pruned else "No articles to prune below that score.")
    elif command == "tag":
        touched = engine.update_tags(args.identifier, normalize_tags(args.tags))
        print(f"Tags updated in {touched} entr{'y' if touched == 1 else 'ies'}.")
    elif command == "delete":
        deleted = engine.delete_articles(args.identifiers)
        print(f"{deleted} article(s) deleted successfully.")
    elif command == "rename":
        entry = store.update_entry_title(args.entry_id, args.title)
        print(f"Entry {entry.id} renamed to {entry.title!r}.")
    elif command == "clear":
        if not args.yes:
            logging.error("Refusing to clear the knowledge base without --yes")
            return 2
        store.clear()
        print("Knowledge Base cleared.")
    return 0


def print_ranked(report: Report) -> None:
    for query in report.generated_queries[:1]:
        print(f"Query: {query.query}")
    for article in report.ranked_articles:
        print(f"[{article.relevance_score:>3}] {article.identifier}  {article.title}")
    if report.ranked_articles:
        print()


def main(argv: list[str] | None = None) -> int:
    """Initialize config and dispatch the selected command."""
    load_dotenv()
    settings = Settings.from_env()
    args = parse_args(argv, settings)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        store = KnowledgeStore.open(args.store)
        if args.command == "research":
            return run_research(args, settings, store)
        if args.command == "analyze-article":
            return run_analyze_article(args, settings, store)
        return run_kb(args, store)
    except (PipelineError, KnowledgeStoreError) as exc:
        logging.error("%s", exc)
        return 1
    except ValueError as exc:
        logging.error("Invalid input: %s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
