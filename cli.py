import argparse
from datetime import datetime

import billing
from app import app, db, Gym, Member, gym_revenue, transactions_dataframe, _ensure_schema


def export_revenue(gym_id, window, out):
    gym = db.session.get(Gym, gym_id)
    if gym is None:
        print('Gym not found:', gym_id)
        return 1
    summary = gym_revenue(gym.id, window)
    transactions_dataframe(summary.transactions).to_excel(out, index=False)
    print(f'Exported {len(summary.transactions)} transactions (total {summary.total:g}) to', out)
    return 0


def list_expiring(gym_id):
    now = datetime.now()
    rows = Member.query.filter_by(gym_id=gym_id).order_by(Member.expiry_date).all()
    found = [m for m in rows if m.status(now) == billing.EXPIRING_SOON]
    for m in found:
        print(f"{m.id}\t{m.name}\t{m.phone or ''}\t{m.expiry_date.date().isoformat()}\t{billing.days_left(m.expiry_date, now)}d")
    if not found:
        print('No members expiring soon')
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest='cmd')
    e = sub.add_parser('export')
    e.add_argument('--gym', required=True)
    e.add_argument('--window', default=billing.ALL, choices=billing.WINDOW_KINDS)
    e.add_argument('--date')
    e.add_argument('--start')
    e.add_argument('--end')
    e.add_argument('--out', default='revenue.xlsx')
    x = sub.add_parser('expiring')
    x.add_argument('--gym', required=True)
    args = parser.parse_args(argv)

    with app.app_context():
        _ensure_schema()
        if args.cmd == 'export':
            try:
                window = billing.RevenueWindow.from_args(
                    {'window': args.window, 'date': args.date, 'start': args.start, 'end': args.end})
            except ValueError as exc:
                print('Error:', exc)
                return 2
            return export_revenue(args.gym, window, args.out)
        if args.cmd == 'expiring':
            return list_expiring(args.gym)
    parser.print_help()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
