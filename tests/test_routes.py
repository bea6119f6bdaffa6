import csv
import io
from datetime import date

from gamepulse import db
from gamepulse.models import Game, Player


def _create_developer(client, **overrides):
    payload = {
        "name": "Lakeside Interactive",
        "email": "team@lakeside.test",
        "metadata": {"company_size": "Small (11-50)", "specialties": ["Puzzle"]},
    }
    payload.update(overrides)
    return client.post("/api/developers", json=payload)


def _create_game(client, **overrides):
    payload = {"title": "Tile Drift", "genre": "puzzle", "price": "14.99", "release_date": "2023-08-01"}
    payload.update(overrides)
    return client.post("/api/games", json=payload)


def _create_player(client, **overrides):
    payload = {"username": "mira", "email": "mira@test", "country": "vn", "level": 4}
    payload.update(overrides)
    return client.post("/api/players", json=payload)


def test_game_crud_round_trip(client, app_instance):
    developer = _create_developer(client).get_json()
    created = _create_game(client, developer_id=developer["id"], metadata={"tags": ["zen"]})

    assert created.status_code == 201
    game = created.get_json()
    assert game["genre"] == "Puzzle"
    assert game["price"] == 14.99
    assert game["release_date"] == "2023-08-01"

    updated = client.put(f"/api/games/{game['id']}", json={"price": 9.99})
    assert updated.status_code == 200
    assert updated.get_json()["price"] == 9.99
    assert updated.get_json()["genre"] == "Puzzle"

    listed = client.get("/api/games").get_json()
    assert [item["title"] for item in listed] == ["Tile Drift"]

    deleted = client.delete(f"/api/games/{game['id']}")
    assert deleted.get_json() == {"message": "Game deleted."}
    assert client.get(f"/api/games/{game['id']}").status_code == 404

    with app_instance.app_context():
        assert db.session.get(Game, game["id"]) is None


def test_invalid_payloads_are_rejected(client):
    assert _create_game(client, title="  ").get_json() == {"error": "Title is required."}
    assert _create_game(client, genre="MMO").status_code == 400
    assert _create_game(client, price="-1").get_json() == {"error": "Price must be at least 0."}
    assert _create_game(client, release_date="01/08/2023").status_code == 400
    assert _create_game(client, developer_id=42).get_json() == {
        "error": "Developer 42 does not exist."
    }
    assert _create_game(client, metadata=["tags"]).status_code == 400

    assert _create_game(client).status_code == 201
    duplicate = _create_game(client)
    assert duplicate.status_code == 400
    assert duplicate.get_json() == {"error": "Game with this title already exists."}


def test_player_with_profile_and_validation(client, app_instance):
    created = _create_player(
        client,
        profile={"bio": "Speedrunner", "settings": {"privacy": "friends", "theme": "dark"}},
    )
    assert created.status_code == 201
    player = created.get_json()
    assert player["country"] == "VN"

    assert _create_player(client, username="other", email="no-at-sign").status_code == 400
    assert _create_player(client, username="other", level=0).status_code == 400
    assert _create_player(client).get_json() == {
        "error": "Player with this username already exists."
    }

    with app_instance.app_context():
        stored = db.session.get(Player, player["id"])
        assert stored.profile.bio == "Speedrunner"
        assert stored.profile.settings["theme"] == "dark"


def test_sessions_and_purchases_validate_references(client):
    player = _create_player(client).get_json()
    game = _create_game(client).get_json()

    bad_session = client.post(
        "/api/sessions",
        json={
            "player_id": player["id"],
            "game_id": game["id"],
            "start_time": "2024-05-01T10:00:00",
            "end_time": "2024-05-01T09:00:00",
        },
    )
    assert bad_session.status_code == 400

    session = client.post(
        "/api/sessions",
        json={
            "player_id": player["id"],
            "game_id": game["id"],
            "start_time": "2024-05-01T10:00:00Z",
            "end_time": "2024-05-01T12:30:00+02:00",
        },
    )
    assert session.status_code == 201
    assert session.get_json()["end_time"] == "2024-05-01T10:30:00"

    missing_player = client.post("/api/purchases", json={"game_id": game["id"], "amount": 5})
    assert missing_player.get_json() == {"error": "Player is required."}

    purchase = client.post(
        "/api/purchases",
        json={"player_id": player["id"], "game_id": game["id"], "amount": "19.5", "payment_method": "paypal"},
    )
    assert purchase.status_code == 201
    assert purchase.get_json()["payment_method"] == "PayPal"


def test_unlocking_an_achievement_twice_is_rejected(client):
    player = _create_player(client).get_json()
    game = _create_game(client).get_json()
    achievement = client.post(
        "/api/achievements", json={"name": "Perfect Grid", "game_id": game["id"], "points": 600}
    ).get_json()

    url = f"/api/players/{player['id']}/achievements"
    assert client.post(url, json={"achievement_id": achievement["id"]}).status_code == 201
    again = client.post(url, json={"achievement_id": achievement["id"]})
    assert again.get_json() == {"error": "Achievement already unlocked."}

    listing = client.get(url).get_json()
    assert [item["name"] for item in listing["unlocked"]] == ["Perfect Grid"]
    assert listing["unlocked"][0]["rarity"] == "Legendary"


def test_domains_endpoint(client):
    domains = client.get("/api/domains").get_json()

    assert domains["countries"] == ["AU", "US", "UK", "JP", "VN"]
    assert "Strategy" in domains["game_genres"]
    assert "BankTransfer" in domains["payment_methods"]


def test_report_endpoints_filter_and_sort(client):
    developer = _create_developer(client).get_json()
    _create_game(client, developer_id=developer["id"])
    _create_game(client, title="Gridlock", genre="Strategy", developer_id=developer["id"])

    reports = client.get("/api/reports").get_json()
    assert [report["slug"] for report in reports] == [
        "game-performance",
        "player-engagement",
        "developer-success",
    ]

    rows = client.get("/api/reports/game-performance?sort=game_title&direction=asc").get_json()
    assert [row["game_title"] for row in rows] == ["Gridlock", "Tile Drift"]

    strategy = client.get("/api/reports/game-performance?genre=strategy").get_json()
    assert [row["game_title"] for row in strategy] == ["Gridlock"]

    assert client.get("/api/reports/game-performance?sort=price").status_code == 400
    assert client.get("/api/reports/game-performance?minRating=high").status_code == 400
    assert client.get("/api/reports/player-engagement?minLevel=9&maxLevel=2").status_code == 400
    assert client.get("/api/reports/unknown").status_code == 404

    summary = client.get("/api/reports/developer-success/summary").get_json()
    assert summary["summary"]["total_games"] == 2
    assert summary["top_developers"][0]["developer_name"] == "Lakeside Interactive"


def test_writes_invalidate_cached_reports(client):
    _create_game(client)
    assert len(client.get("/api/reports/game-performance").get_json()) == 1

    _create_game(client, title="Second Wind")
    assert len(client.get("/api/reports/game-performance").get_json()) == 2


def test_manual_cache_invalidation(client, app_instance):
    client.get("/api/reports/game-performance")
    client.get("/api/reports/player-engagement")
    cache = app_instance.extensions["report_cache"]
    assert len(cache) == 2

    response = client.post("/api/reports/cache/invalidate", json={"report": "game-performance"})
    assert response.get_json() == {"invalidated": 1}
    assert client.post("/api/reports/cache/invalidate", json={"report": "nope"}).status_code == 404
    assert client.post("/api/reports/cache/invalidate").get_json() == {"invalidated": 1}


def test_csv_export_download(client):
    _create_game(client, title="Tile Drift")
    _create_game(client, title="Gridlock", genre="Strategy")

    response = client.get("/api/reports/game-performance/export.csv?sort=game_title&direction=asc")

    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    today = date.today().isoformat()
    assert response.headers["Content-Disposition"] == (
        f'attachment; filename="game-performance-report-{today}-sorted-game_title-asc.csv"'
    )
    rows = list(csv.reader(io.StringIO(response.get_data(as_text=True))))
    assert rows[0][:3] == ["Game", "Genre", "Developer"]
    assert [row[0] for row in rows[1:]] == ["Gridlock", "Tile Drift"]
    assert rows[1][2] == "Unknown"


def test_pdf_export_download(client):
    _create_player(client)

    response = client.get("/api/reports/player-engagement/export.pdf?summary=1")

    assert response.status_code == 200
    assert response.mimetype == "application/pdf"
    assert response.get_data().startswith(b"%PDF")
    assert response.headers["Content-Disposition"].startswith(
        'attachment; filename="player-engagement-report-'
    )


def test_dashboard_endpoints(client):
    player = _create_player(client).get_json()
    game = _create_game(client).get_json()

    metrics = client.get("/api/dashboard/metrics").get_json()
    assert metrics["total_players"] == 1

    activity = client.get("/api/dashboard/activity?limit=1").get_json()
    assert len(activity) == 1
    assert client.get("/api/dashboard/activity?limit=lots").status_code == 400

    leaderboard = client.get(f"/api/games/{game['id']}/leaderboard?player_id={player['id']}").get_json()
    assert leaderboard == {
        "top_players": [],
        "stats": {"total_players": 0, "highest_score": 0, "average_score": 0},
        "player_rank": None,
        "leaderboard": None,
    }
    assert client.get("/api/games/999/leaderboard").status_code == 404

    stats = client.get(f"/api/players/{player['id']}/stats").get_json()
    assert stats["performance"]["games_played"] == 0
    assert client.get("/api/players/999/stats").status_code == 404


def test_detail_and_player_views(client):
    developer = _create_developer(client).get_json()
    game = _create_game(client, developer_id=developer["id"], metadata={"tags": ["zen"]}).get_json()
    player = _create_player(client).get_json()
    achievement = client.post(
        "/api/achievements", json={"name": "Calm Mind", "game_id": game["id"], "points": 120}
    ).get_json()
    client.post(f"/api/players/{player['id']}/achievements", json={"achievement_id": achievement["id"]})
    client.post(
        "/api/sessions",
        json={
            "player_id": player["id"],
            "game_id": game["id"],
            "start_time": "2024-05-01T10:00:00",
            "end_time": "2024-05-01T11:30:00",
        },
    )

    game_detail = client.get(f"/api/games/{game['id']}").get_json()
    assert game_detail["developer"]["name"] == "Lakeside Interactive"
    assert game_detail["details"]["tags"] == ["zen"]

    developer_detail = client.get(f"/api/developers/{developer['id']}").get_json()
    assert [item["title"] for item in developer_detail["games"]] == ["Tile Drift"]
    assert developer_detail["profile"]["specialties"] == ["Puzzle"]

    achievements = client.get(f"/api/games/{game['id']}/achievements?player_id={player['id']}").get_json()
    assert achievements["stats"] == {"total": 1, "unlocked": 1, "locked": 0, "percentage": 100}
    assert achievements["achievements"][0]["is_unlocked"] is True
    assert client.get(f"/api/games/{game['id']}/achievements?player_id=999").status_code == 404

    dashboard = client.get(f"/api/players/{player['id']}/dashboard").get_json()
    assert dashboard["stats"]["total_playtime_hours"] == 1.5
    assert dashboard["recent_achievements"][0]["name"] == "Calm Mind"
    assert client.get("/api/players/999/dashboard").status_code == 404

    recent = client.get("/api/sessions/recent?limit=5").get_json()
    assert [item["game"]["title"] for item in recent] == ["Tile Drift"]
    assert client.get("/api/sessions/recent?limit=many").status_code == 400
