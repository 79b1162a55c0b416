import argparse
import json
import logging
import math
import sys
from dataclasses import asdict

from tqdm import tqdm

from .client import (
    AniListClient, AniListError, CandidateFilter, ConfigurationError, hydrate_candidates,
)
from .config import DEFAULT_MAX_CONCURRENT, DEFAULT_TOP_PAGES
from .database import RunContext, run_context
from .mal import fetch_mal_list, mal_rating_history
from .profile import build_model, list_model
from .recommender import bucket_by_weight, format_report, recommend

logger = logging.getLogger(__name__)

SEASONS = ("winter", "spring", "summer", "fall")


def _progress_bar(total: int | None, desc: str) -> tqdm:
    return tqdm(total=total, desc=desc, leave=False)


def _apply_global_options(args: argparse.Namespace, ctx: RunContext) -> None:
    """Copy command-line credentials/user into the context."""
    if args.client_id:
        ctx.client_id = args.client_id
    if args.client_secret:
        ctx.client_secret = args.client_secret

    if args.user:
        ctx.user = args.user

    if not ctx.client_id or not ctx.client_secret or not ctx.user:
        raise ConfigurationError(
            "You will want to specify client credentials and the user to fetch the scores from:\n"
            "  --client-id=<id> --client-secret=<secret> --user=<user>\n"
            "(Obtain client credentials from http://anilist.co/developer)"
        )


def _ensure_model(args: argparse.Namespace, ctx: RunContext, client: AniListClient) -> None:
    """Rebuild the model when none is stored, it belongs to another user, or --refresh was given."""
    if ctx.model is not None and ctx.model_user == ctx.user and not args.refresh:
        logger.debug(f"Using stored model from {ctx.model_updated_at}")
        return

    if args.mal:
        entries = fetch_mal_list(ctx.user)
        with _progress_bar(len(entries), "MAL list") as bar:
            history = mal_rating_history(client, entries, progress=lambda done, total: bar.update(1))
    else:
        with _progress_bar(None, "History") as bar:
            def _tick(done, total):
                bar.total = total
                bar.update(1)
            history = client.fetch_rating_history(ctx.user, progress=_tick)

    ctx.replace_model(build_model(history))
    logger.info(f"Model rebuilt from {len(ctx.model.seen)} titles ({len(ctx.model)} tags)")


def _open_client(ctx: RunContext) -> AniListClient:
    client = AniListClient(ctx.client_id, ctx.client_secret)
    try:
        client.authenticate()
    except AniListError:
        client.close()
        raise
    return client


def _candidate_filter(args: argparse.Namespace) -> CandidateFilter:
    target = args.target
    if len(target) == 2:
        season, year = target
        if season.lower() not in SEASONS or not year.isdigit():
            raise ConfigurationError(f"Expected '<season> <year>' with season one of {', '.join(SEASONS)}")
        return CandidateFilter.for_season(season, int(year))
    if len(target) == 1:
        return CandidateFilter.watched_by(target[0])
    return CandidateFilter.top(args.pages)


def _json_number(value: float) -> float | None:
    return value if math.isfinite(value) else None


def _output_recommendations(classes: list, args: argparse.Namespace) -> None:
    if getattr(args, 'format', 'text') == 'json':
        output = []
        for index in reversed(range(len(classes))):
            candidates = []
            for candidate in classes[index]:
                data = asdict(candidate)
                data['calc_score'] = _json_number(candidate.calc_score)
                candidates.append(data)
            output.append({"weight_class": index, "candidates": candidates})
        logger.info(json.dumps(output, indent=2, ensure_ascii=False))
        return

    for line in format_report(classes):
        logger.info(line)


def cmd_list(args: argparse.Namespace) -> None:
    """Print the tag statistics of the model, best mean first."""
    with run_context(args.db) as ctx:
        _apply_global_options(args, ctx)
        with _open_client(ctx) as client:
            _ensure_model(args, ctx, client)

        for tag, count, avg, sd in list_model(ctx.model):
            logger.info(f"{tag} ({count}): {avg:.2f} ±{sd:.2f}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Score and rank candidates against the model."""
    with run_context(args.db) as ctx:
        _apply_global_options(args, ctx)
        candidate_filter = _candidate_filter(args)

        with _open_client(ctx) as client:
            _ensure_model(args, ctx, client)

            stubs = client.fetch_candidate_batch(candidate_filter)
            ids = [int(stub['id']) for stub in stubs]
            if args.new:
                ids = [i for i in ids if i not in ctx.model.seen]

            with _progress_bar(len(ids), "Candidates") as bar:
                records = hydrate_candidates(
                    client, ids,
                    max_concurrent=args.concurrency,
                    progress=lambda done, total: bar.update(1),
                )

        scored = recommend(ctx.model, records)
        _output_recommendations(bucket_by_weight(scored), args)


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="AniList genre/staff based recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--client-id", help="AniList client ID (http://anilist.co/developer)")
    parser.add_argument("--client-secret", help="AniList client secret")
    parser.add_argument("--user", help="User to fetch scores from")
    parser.add_argument("--refresh", action="store_true", help="Rebuild the model even if one is stored")
    parser.add_argument("--mal", action="store_true",
                        help="Build the model from the user's MyAnimeList list instead")
    parser.add_argument("--db", default=None, help="State database path (default: $ANILIST_DB)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List the tag statistics")
    list_parser.set_defaults(func=cmd_list)

    rec_parser = subparsers.add_parser(
        "recommend",
        help="Recommend anime",
        description=(
            "recommend <season> <year>   recommends anime from that season\n"
            "recommend <user>            recommends anime that user has completed watching\n"
            "recommend                   recommends anime from the highscore list"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    rec_parser.add_argument("target", nargs="*", metavar="SEASON YEAR | USER")
    rec_parser.add_argument("--new", action="store_true", help="Skip titles already seen")
    rec_parser.add_argument("--pages", type=int, default=DEFAULT_TOP_PAGES,
                            help=f"Highscore pages to consider (default: {DEFAULT_TOP_PAGES})")
    rec_parser.add_argument("--concurrency", type=int, default=DEFAULT_MAX_CONCURRENT,
                            help="Parallel candidate fetches (default: sequential)")
    rec_parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    args = parser.parse_args(argv)
    if args.command == "recommend" and len(args.target) > 2:
        parser.error("recommend takes at most two arguments")

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(message)s' if not args.verbose else '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        args.func(args)
    except AniListError as exc:
        logger.error(str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
