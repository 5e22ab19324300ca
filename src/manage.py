# Command line entry point for running a tournament without the web API

import argparse
import os
import sys

import yaml

from smkc.audit import AuditLog
from smkc.bracket import get_round_name
from smkc.errors import TournamentError
from smkc.service import MatchService
from smkc.standings import StandingsCache
from smkc.storage import TournamentStore


def default_data_dir():
    script_dir = os.path.dirname(__file__)
    base_dir = os.path.dirname(script_dir)
    return os.environ.get('TOURNAMENT_DATA_DIR', os.path.join(base_dir, 'data'))


def build_service(data_dir):
    store = TournamentStore(data_dir)
    return MatchService(store, audit=AuditLog(store), cache=StandingsCache())


def load_entries(file_path, handles):
    """Read qualification groups from YAML: ``{group: [handle, ...]}``."""
    with open(file_path, mode='r', encoding='utf-8') as file:
        groups = yaml.safe_load(file) or {}
    entries = []
    for group, group_handles in groups.items():
        for seeding, handle in enumerate(group_handles, start=1):
            competitor = handles.get(str(handle).lower())
            if competitor is None:
                raise SystemExit(f'Unknown competitor handle: {handle}')
            entries.append({'competitor_id': competitor.id, 'group': str(group), 'seeding': seeding})
    return entries


def cmd_create_tournament(service, args):
    tournament = service.create_tournament(args.name, args.format, actor='cli')
    print(f"Created tournament {tournament.id} ({tournament.format})")


def cmd_add_competitor(service, args):
    competitor = service.create_competitor(args.name, args.handle, password=args.password, actor='cli')
    print(f"Added {competitor.name} (@{competitor.handle}) as {competitor.id}")


def cmd_setup_qualification(service, args):
    handles = {c.handle: c for c in service.list_competitors()}
    entries = load_entries(args.groups_file, handles)
    matches = service.setup_qualification(args.tournament, entries, actor='cli')
    print(f"Generated {len(matches)} qualification matches")


def cmd_generate_finals(service, args):
    bracket = service.generate_finals(args.tournament, top_n=args.top_n, actor='cli')
    quarterfinals = [m for m in bracket['sections']['winners'] if m['round'] == 'winners_qf']
    print(f"Finals bracket generated with {len(quarterfinals)} quarterfinals")


def cmd_standings(service, args):
    payload, _ = service.standings(args.tournament)
    group = None
    for row in payload['standings']:
        if row['group'] != group:
            group = row['group']
            print(f"\n# Group {group}")
        print(f"{row['rank']:>2}. {row['name'] or row['competitor_id']:<20} "
              f"W{row['wins']} T{row['ties']} L{row['losses']}  score {row['score']}  points {row['points']}")


def cmd_bracket(service, args):
    names = {c.id: c.handle for c in service.list_competitors(include_deleted=True)}
    bracket = service.bracket(args.tournament)
    if not bracket['topology']:
        print("No finals bracket yet.")
        return
    for section, matches in bracket['sections'].items():
        print(f"\n--- {section.replace('_', ' ').title()} ---")
        for match in matches:
            side1 = names.get(match['competitor1_id'], 'TBD')
            side2 = names.get(match['competitor2_id'], 'TBD')
            result = f"{match['score1']}-{match['score2']}" if match['completed'] else ''
            if match['walkover']:
                result = 'walkover'
            print(f"  #{match['seq']:<2} {get_round_name(match['round']):<22} {side1} vs {side2} {result}")
    if bracket['champion_id']:
        print(f"\nChampion: {names.get(bracket['champion_id'], bracket['champion_id'])}")


def build_parser():
    parser = argparse.ArgumentParser(description='SMK tournament manager')
    parser.add_argument('--data-dir', default=default_data_dir())
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('create-tournament')
    p.add_argument('name')
    p.add_argument('--format', choices=['bm', 'mr', 'gp'], default='bm')
    p.set_defaults(func=cmd_create_tournament)

    p = sub.add_parser('add-competitor')
    p.add_argument('name')
    p.add_argument('handle')
    p.add_argument('--password')
    p.set_defaults(func=cmd_add_competitor)

    p = sub.add_parser('setup-qualification')
    p.add_argument('tournament')
    p.add_argument('groups_file', help='YAML mapping of group name to competitor handles')
    p.set_defaults(func=cmd_setup_qualification)

    p = sub.add_parser('generate-finals')
    p.add_argument('tournament')
    p.add_argument('--top-n', type=int, default=8)
    p.set_defaults(func=cmd_generate_finals)

    p = sub.add_parser('standings')
    p.add_argument('tournament')
    p.set_defaults(func=cmd_standings)

    p = sub.add_parser('bracket')
    p.add_argument('tournament')
    p.set_defaults(func=cmd_bracket)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    service = build_service(args.data_dir)
    try:
        args.func(service, args)
    except TournamentError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
