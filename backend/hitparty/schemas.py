from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .game import GameSession
from .models import Phase, Player, RoundResult, Song, YearRange


class CommandIn(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreateSessionIn(CommandIn):
    type: Literal["create_session"]


class ConfirmPreferencesIn(CommandIn):
    type: Literal["confirm_preferences"]
    text: str = Field(max_length=500)
    # a host may bring its own queue; otherwise the song provider is asked
    songs: Optional[Annotated[List[Song], Field(max_length=200)]] = None
    start_year_range: Optional[YearRange] = None


class JoinSessionIn(CommandIn):
    type: Literal["join_session"]
    code: str = Field(min_length=1, max_length=16)
    name: str = Field(max_length=40)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    stage_name: Optional[str] = Field(default=None, max_length=60)


class RejoinSessionIn(CommandIn):
    type: Literal["rejoin_session"]
    code: str = Field(min_length=1, max_length=16)
    player_id: str = Field(min_length=1, max_length=64)


class StartGameIn(CommandIn):
    type: Literal["start_game"]


class SubmitPlacementIn(CommandIn):
    type: Literal["submit_placement"]
    index: StrictInt


class RevealResultsIn(CommandIn):
    type: Literal["reveal_results"]


class NextRoundIn(CommandIn):
    type: Literal["next_round"]


class KickPlayerIn(CommandIn):
    type: Literal["kick_player"]
    player_id: str = Field(min_length=1, max_length=64)


class EndSessionIn(CommandIn):
    type: Literal["end_session"]


Command = Annotated[
    Union[
        CreateSessionIn,
        ConfirmPreferencesIn,
        JoinSessionIn,
        RejoinSessionIn,
        StartGameIn,
        SubmitPlacementIn,
        RevealResultsIn,
        NextRoundIn,
        KickPlayerIn,
        EndSessionIn,
    ],
    Field(discriminator="type"),
]

command_adapter = TypeAdapter(Command)


def parse_command(raw: Any) -> Command:
    try:
        return command_adapter.validate_python(raw)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        raise ValidationError(f"Invalid message ({where}): {first.get('msg')}") from exc


class SessionStateOut(BaseModel):
    code: str
    phase: Phase
    round: int
    preference: Optional[str] = None
    start_year_range: Optional[YearRange] = None
    players: List[Player]
    leaderboard: List[str]
    current_song: Optional[Song] = None
    song_hidden: bool = False
    last_song: Optional[Song] = None
    results: List[RoundResult] = Field(default_factory=list)
    winner_id: Optional[str] = None
    songs_remaining: int = 0
    is_host: bool = False
    you: Optional[str] = None
    your_placement: Optional[int] = None


def build_state(session: GameSession, viewer: Optional[str] = None) -> SessionStateOut:
    """Session state as seen by the connection ``viewer``.

    Only the host hears the song while a round is playing, so everyone
    else gets it withheld until the reveal. ``viewer=None`` is the public
    view used for polling clients.
    """
    is_host = viewer is not None and session.is_host(viewer)
    me = session.player_for_connection(viewer) if viewer else None
    hide = session.phase == "playing" and not is_host

    return SessionStateOut(
        code=session.code,
        phase=session.phase,
        round=session.round,
        preference=session.preference,
        start_year_range=session.start_year_range,
        players=[p.model_copy(deep=True) for p in session.players],
        leaderboard=[p.id for p in session.leaderboard()],
        current_song=None if hide else session.current_song,
        song_hidden=hide and session.current_song is not None,
        last_song=session.last_song,
        results=list(session.last_results) if session.phase in ("reveal", "finished") else [],
        winner_id=session.winner_id,
        songs_remaining=session.songs_remaining,
        is_host=is_host,
        you=me.id if me else None,
        your_placement=session.staged_placement(me.id) if me else None,
    )
