from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

# setup -> lobby -> playing -> reveal -> playing | finished
Phase = Literal["setup", "lobby", "playing", "reveal", "finished"]


class Song(BaseModel):
    id: str
    title: str
    artist: str
    year: int
    album_cover: Optional[str] = None
    preview_url: Optional[str] = None
    movie: Optional[str] = None
    trivia: Optional[str] = None
    is_start_card: bool = False


class YearRange(BaseModel):
    min: int
    max: int

    @model_validator(mode="after")
    def check_order(self):
        if self.min > self.max:
            raise ValueError("start year range min must not exceed max")
        return self

    def contains(self, year: int) -> bool:
        return self.min <= year <= self.max


class Player(BaseModel):
    id: str
    name: str
    avatar: Optional[str] = None
    stage_name: Optional[str] = None
    start_year: int
    timeline: List[Song] = Field(default_factory=list)
    score: int = 0
    is_ready: bool = False
    connected: bool = True
    # transient transport identity, never exposed in public views
    connection_id: Optional[str] = Field(default=None, exclude=True)


class RoundResult(BaseModel):
    player_id: str
    placement: Optional[int] = None
    submitted: bool = False
    correct: bool = False
    song: Song
    score: int
