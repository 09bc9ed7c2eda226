from messages import battle_url, render_battle


def sample_battle():
    return {
        'id': 987654,
        'startTime': '2024-05-01T18:00:00.000Z',
        'endTime': '2024-05-01T18:12:30.000Z',
        'totalFame': 1234567,
        'totalKills': 42,
        'players': {'p1': {'name': 'PlayerOne'}, 'p2': {'name': 'PlayerTwo'}},
        'guilds': {
            'g1': {'name': 'Small Guild', 'alliance': 'ALLY', 'kills': 2, 'deaths': 10, 'killFame': 1000},
            'g2': {'name': 'Big Guild', 'alliance': '', 'kills': 40, 'deaths': 3, 'killFame': 900000},
        },
        'alliances': {'a1': {'name': 'ALLY', 'kills': 2, 'deaths': 10, 'killFame': 1000}},
    }


def test_render_battle_builds_embed():
    payload = render_battle(sample_battle(), lang="en")

    embed = payload['embeds'][0]
    assert embed['title'] == 'Battle 987654'
    assert embed['url'] == battle_url(sample_battle(), 'en')
    assert embed['url'].endswith('/en/killboard/battles/987654')
    assert embed['timestamp'].startswith('2024-05-01T18:00:00')
    assert embed['footer']['text'] == '2 players'

    description = embed['description']
    assert '**42** kills' in description
    assert '1,234,567' in description
    assert '12m 30s' in description
    assert '[ALLY]' in description
    # Guilds are listed by kill fame
    assert description.index('Big Guild') < description.index('Small Guild')


def test_render_battle_tolerates_sparse_battles():
    payload = render_battle({'id': 1, 'totalFame': 10}, lang="pt")

    embed = payload['embeds'][0]
    assert '/pt/killboard/battles/1' in embed['url']
    assert 'timestamp' not in embed
    assert '**0** kills' in embed['description']
