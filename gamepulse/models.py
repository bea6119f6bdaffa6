from __future__ import annotations

from datetime import date, datetime, timezone

from . import db


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the columns below are stored."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class Developer(db.Model):
    __tablename__ = "developers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, unique=True)
    email = db.Column(db.String(255), nullable=True)
    logo_url = db.Column(db.String(512), nullable=True)
    # ``metadata`` is reserved on declarative models.
    metadata_json = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    games = db.relationship("Game", back_populates="developer")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "logo_url": self.logo_url,
            "metadata": self.metadata_json,
            "created_at": _iso(self.created_at),
        }


class Game(db.Model):
    __tablename__ = "games"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False, unique=True)
    genre = db.Column(db.String(32), nullable=True)
    price = db.Column(db.Float, nullable=True)
    release_date = db.Column(db.Date, nullable=True)
    cover_image_url = db.Column(db.String(512), nullable=True)
    metadata_json = db.Column("metadata", db.JSON, nullable=True)
    developer_id = db.Column(db.Integer, db.ForeignKey("developers.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    developer = db.relationship("Developer", back_populates="games")
    sessions = db.relationship(
        "GameSession", back_populates="game", cascade="all, delete-orphan"
    )
    purchases = db.relationship(
        "Purchase", back_populates="game", cascade="all, delete-orphan"
    )
    achievements = db.relationship(
        "Achievement", back_populates="game", cascade="all, delete-orphan"
    )
    leaderboards = db.relationship(
        "Leaderboard", back_populates="game", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "genre": self.genre,
            "price": self.price,
            "release_date": _iso(self.release_date),
            "cover_image_url": self.cover_image_url,
            "metadata": self.metadata_json,
            "developer_id": self.developer_id,
            "created_at": _iso(self.created_at),
        }


class Player(db.Model):
    __tablename__ = "players"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False, unique=True)
    email = db.Column(db.String(255), nullable=False)
    country = db.Column(db.String(8), nullable=True)
    level = db.Column(db.Integer, nullable=False, default=1)
    total_score = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    profile = db.relationship(
        "PlayerProfile",
        back_populates="player",
        uselist=False,
        cascade="all, delete-orphan",
    )
    sessions = db.relationship(
        "GameSession", back_populates="player", cascade="all, delete-orphan"
    )
    purchases = db.relationship(
        "Purchase", back_populates="player", cascade="all, delete-orphan"
    )
    player_achievements = db.relationship(
        "PlayerAchievement", back_populates="player", cascade="all, delete-orphan"
    )
    leaderboard_entries = db.relationship(
        "LeaderboardEntity", back_populates="player", cascade="all, delete-orphan"
    )

    def to_dict(self, include_profile: bool = False) -> dict:
        payload = {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "country": self.country,
            "level": self.level,
            "total_score": self.total_score,
            "created_at": _iso(self.created_at),
        }
        if include_profile:
            payload["profile"] = self.profile.to_dict() if self.profile else None
        return payload


class PlayerProfile(db.Model):
    __tablename__ = "player_profiles"

    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(
        db.Integer, db.ForeignKey("players.id"), nullable=False, unique=True
    )
    bio = db.Column(db.Text, nullable=True)
    avatar_url = db.Column(db.String(512), nullable=True)
    settings = db.Column(db.JSON, nullable=True)

    player = db.relationship("Player", back_populates="profile")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "player_id": self.player_id,
            "bio": self.bio,
            "avatar_url": self.avatar_url,
            "settings": self.settings,
        }


class GameSession(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.Integer, db.ForeignKey("players.id"), nullable=False)
    game_id = db.Column(db.Integer, db.ForeignKey("games.id"), nullable=False)
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)

    player = db.relationship("Player", back_populates="sessions")
    game = db.relationship("Game", back_populates="sessions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "player_id": self.player_id,
            "game_id": self.game_id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
        }


class Purchase(db.Model):
    __tablename__ = "purchases"

    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.Integer, db.ForeignKey("players.id"), nullable=False)
    game_id = db.Column(db.Integer, db.ForeignKey("games.id"), nullable=False)
    amount = db.Column(db.Float, nullable=True)
    payment_method = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    player = db.relationship("Player", back_populates="purchases")
    game = db.relationship("Game", back_populates="purchases")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "player_id": self.player_id,
            "game_id": self.game_id,
            "amount": self.amount,
            "payment_method": self.payment_method,
            "created_at": _iso(self.created_at),
        }


class Achievement(db.Model):
    __tablename__ = "achievements"

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey("games.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    points = db.Column(db.Integer, nullable=False, default=0)
    criteria = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    game = db.relationship("Game", back_populates="achievements")
    unlocks = db.relationship(
        "PlayerAchievement", back_populates="achievement", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "game_id": self.game_id,
            "name": self.name,
            "description": self.description,
            "points": self.points,
            "criteria": self.criteria,
            "created_at": _iso(self.created_at),
        }


class PlayerAchievement(db.Model):
    __tablename__ = "player_achievements"
    __table_args__ = (db.UniqueConstraint("player_id", "achievement_id"),)

    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.Integer, db.ForeignKey("players.id"), nullable=False)
    achievement_id = db.Column(
        db.Integer, db.ForeignKey("achievements.id"), nullable=False
    )
    unlocked_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    player = db.relationship("Player", back_populates="player_achievements")
    achievement = db.relationship("Achievement", back_populates="unlocks")


class Leaderboard(db.Model):
    __tablename__ = "leaderboards"

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey("games.id"), nullable=False)
    type = db.Column(db.String(32), nullable=False, default="all_time")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    game = db.relationship("Game", back_populates="leaderboards")
    entries = db.relationship(
        "LeaderboardEntity",
        back_populates="leaderboard",
        cascade="all, delete-orphan",
        order_by="LeaderboardEntity.rank",
    )


class LeaderboardEntity(db.Model):
    __tablename__ = "leaderboard_entities"

    id = db.Column(db.Integer, primary_key=True)
    leaderboard_id = db.Column(
        db.Integer, db.ForeignKey("leaderboards.id"), nullable=False
    )
    player_id = db.Column(db.Integer, db.ForeignKey("players.id"), nullable=False)
    rank = db.Column(db.Integer, nullable=True)
    score = db.Column(db.Float, nullable=False, default=0)
    achieved_at = db.Column(db.DateTime, nullable=True)

    leaderboard = db.relationship("Leaderboard", back_populates="entries")
    player = db.relationship("Player", back_populates="leaderboard_entries")
