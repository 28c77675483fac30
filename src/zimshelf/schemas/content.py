from pydantic import BaseModel


class SearchHitOut(BaseModel):
    archive_id: int
    archive_title: str
    title: str
    snippet: str
    url: str


class SearchResultsOut(BaseModel):
    query: str
    total: int
    results: list[SearchHitOut]
