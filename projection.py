"""
Read-model projection

Views built fresh from tokens, tables and assignments on every read.
Nothing here touches the database or keeps derived state between calls.
"""

from models import TokenStatus

# Order in which the token summary is decided; lower ranks first.
SUMMARY_PRIORITY = (
    'on_hold',
    'unassigned',
    'partially_assigned',
    'assigned',
    'called',
    'seated',
)


def _occupancy(table):
    return table.current_occupancy or 0


def free_seats(table):
    return max(0, table.capacity - _occupancy(table))


def _tables_label(assigned_tables):
    numbers = [str(t['table_number'] or '?') for t in assigned_tables]
    if not numbers:
        return 'no table'
    if len(numbers) == 1:
        return f'Table {numbers[0]}'
    return f"Tables {', '.join(numbers)}"


def _summary(key, text):
    rank = SUMMARY_PRIORITY.index(key) if key in SUMMARY_PRIORITY else len(SUMMARY_PRIORITY)
    return {'key': key, 'text': text, 'rank': rank}


def status_summary(token, assigned_tables, total_assigned):
    """One-line description of where a party stands."""
    status = token.status
    label = _tables_label(assigned_tables)

    if status == TokenStatus.ON_HOLD:
        return _summary('on_hold', 'On hold')
    if status == TokenStatus.WAITING:
        if total_assigned == 0:
            return _summary('unassigned', 'No table assigned yet')
        if total_assigned < token.people_count:
            remaining = token.people_count - total_assigned
            return _summary(
                'partially_assigned',
                f'{total_assigned} of {token.people_count} placed at {label}, {remaining} still need seats'
            )
        return _summary('assigned', f'{label} assigned')
    if status == TokenStatus.CALLED:
        if total_assigned == 0:
            return _summary('called', 'Customer called')
        return _summary('called', f'Customer called - {label} ready')
    if status == TokenStatus.SEATED:
        return _summary('seated', f'Eating at {label}')
    return _summary(status, status.replace('_', ' ').capitalize())


def token_view(token, assignments, tables_by_id):
    """Token plus the tables its party is spread over.

    assignments may hold rows of other tokens; several rows at the same
    table are merged.
    """
    per_table = {}
    for assignment in assignments:
        if assignment.token_id != token.id:
            continue
        per_table[assignment.table_id] = per_table.get(assignment.table_id, 0) + assignment.party_size

    assigned_tables = []
    for table_id, seats in per_table.items():
        table = tables_by_id.get(table_id)
        assigned_tables.append({
            'table_id': table_id,
            'table_number': table.table_number if table is not None else None,
            'party_size': seats
        })

    total_assigned = sum(per_table.values())
    view = token.to_dict()
    view.update({
        'assigned_tables': assigned_tables,
        'total_assigned': total_assigned,
        'remaining': max(0, token.people_count - total_assigned),
        'summary': status_summary(token, assigned_tables, total_assigned)
    })
    return view


def table_view(table, assignments, tokens_by_id=None):
    tokens_by_id = tokens_by_id or {}
    occupied = _occupancy(table)
    occupants = []
    for assignment in assignments:
        if assignment.table_id != table.id:
            continue
        token = tokens_by_id.get(assignment.token_id)
        occupants.append({
            'token_id': assignment.token_id,
            'token_number': token.token_number if token is not None else None,
            'name': token.name if token is not None else None,
            'party_size': assignment.party_size
        })

    view = table.to_dict()
    view.update({
        'available_seats': free_seats(table),
        'occupancy_ratio': round(occupied / table.capacity, 2) if table.capacity else 0.0,
        'is_shared': 0 < occupied < table.capacity,
        'is_full': occupied >= table.capacity,
        'occupants': occupants
    })
    return view


def queue_stats(tokens, tables):
    counts = {status: 0 for status in TokenStatus.ALL}
    for token in tokens:
        counts[token.status] = counts.get(token.status, 0) + 1

    return {
        'by_status': counts,
        'total_active': sum(counts[s] for s in TokenStatus.ACTIVE),
        'free_seats': sum(free_seats(t) for t in tables),
        'occupied_seats': sum(_occupancy(t) for t in tables),
        'total_capacity': sum(t.capacity for t in tables)
    }


def assignable_tables(view, tables):
    """Tables that can take at least one more person of this party.

    seats_to_assign is what a squeeze would place there: the whole rest of
    the party if it fits, otherwise every free seat.
    """
    remaining = view['remaining']
    if remaining <= 0:
        return []

    options = []
    for table in tables:
        available = free_seats(table)
        if available <= 0:
            continue
        options.append({
            'table_id': table.id,
            'table_number': table.table_number,
            'available_seats': available,
            'seats_to_assign': min(remaining, available),
            'will_squeeze': available < remaining,
            'is_shared': _occupancy(table) > 0
        })
    return options


def build_board(tokens, tables, assignments):
    """Everything a staff screen shows: active parties, tables, counts.

    tokens is the whole service day; terminal tokens only count in stats.
    """
    tables_by_id = {t.id: t for t in tables}
    tokens_by_id = {t.id: t for t in tokens}
    active = [t for t in tokens if t.status in TokenStatus.ACTIVE]

    return {
        'tokens': [token_view(t, assignments, tables_by_id) for t in active],
        'tables': [table_view(t, assignments, tokens_by_id) for t in tables],
        'stats': queue_stats(tokens, tables)
    }
