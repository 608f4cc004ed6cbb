"""
backend/features/analysis/repository.py

Persistence for code analyses and their explanations.

Handles:
- Cache lookup by (user, code hash, language, level)
- Saving an analysis with one explanation per level
- Paged history, single fetch and delete (owner-scoped)
"""

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol, Tuple

from sqlalchemy import and_, delete, func, insert, select
from sqlalchemy.engine import Engine

from backend.core.database import code_analyses, explanations
from backend.models.analysis import CodeAnalysis, Explanation, ExplanationResult, HistoryPage


MAX_PAGE_LIMIT = 100


class HistoryFilter:
    def __init__(
        self,
        language: Optional[str] = None,
        is_claude_generated: Optional[bool] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ):
        self.language = language
        self.is_claude_generated = is_claude_generated
        self.start_date = start_date
        # end_date is inclusive of the whole day
        self.end_before = end_date + timedelta(days=1) if end_date else None

    def matches(self, analysis: CodeAnalysis) -> bool:
        if self.language and analysis.language != self.language:
            return False
        if self.is_claude_generated is not None and analysis.is_claude_generated != self.is_claude_generated:
            return False
        if self.start_date and analysis.created_at < self.start_date:
            return False
        if self.end_before and analysis.created_at >= self.end_before:
            return False
        return True


class AnalysisRepository(Protocol):
    def find_cached(self, user_id: str, code_hash: str, language: str, level: str) -> Optional[Tuple[str, Explanation]]:
        ...

    def save(
        self,
        *,
        user_id: str,
        code: str,
        code_hash: str,
        language: str,
        level: str,
        result: ExplanationResult,
        file_name: Optional[str] = None,
        file_path: Optional[str] = None,
        is_claude_generated: bool = False,
        detection_method: str = "manual",
    ) -> Tuple[str, Explanation]:
        ...

    def history(self, user_id: str, page: int, limit: int, filters: HistoryFilter) -> HistoryPage:
        ...

    def get(self, user_id: str, analysis_id: str) -> Optional[CodeAnalysis]:
        ...

    def delete(self, user_id: str, analysis_id: str) -> bool:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_explanation(level: str, result: ExplanationResult) -> Explanation:
    return Explanation(
        id=str(uuid.uuid4()),
        level=level,
        content=result.content,
        summary=result.summary,
        key_concepts=list(result.key_concepts),
        complexity_score=result.complexity_score,
        ai_model=result.model,
        generation_time_ms=result.generation_time_ms,
        created_at=_now(),
    )


class InMemoryAnalysisRepository:
    """Process-local repository for development and tests."""

    def __init__(self):
        self._analyses: Dict[str, CodeAnalysis] = {}
        self._lock = threading.Lock()

    def _find_analysis(self, user_id: str, code_hash: str, language: str) -> Optional[CodeAnalysis]:
        for analysis in self._analyses.values():
            if analysis.user_id == user_id and analysis.code_hash == code_hash and analysis.language == language:
                return analysis
        return None

    def find_cached(self, user_id, code_hash, language, level):
        with self._lock:
            analysis = self._find_analysis(user_id, code_hash, language)
            if analysis is None:
                return None
            for explanation in analysis.explanations:
                if explanation.level == level:
                    return analysis.id, explanation
            return None

    def save(self, *, user_id, code, code_hash, language, level, result, file_name=None,
             file_path=None, is_claude_generated=False, detection_method="manual"):
        explanation = _new_explanation(level, result)
        with self._lock:
            existing = self._find_analysis(user_id, code_hash, language)
            if existing is not None:
                updated = existing.model_copy(update={"explanations": [*existing.explanations, explanation]})
                self._analyses[existing.id] = updated
                return existing.id, explanation

            created_at = _now()
            analysis = CodeAnalysis(
                id=str(uuid.uuid4()),
                user_id=user_id,
                code=code,
                code_hash=code_hash,
                language=language,
                file_name=file_name,
                file_path=file_path,
                is_claude_generated=is_claude_generated,
                detection_method=detection_method,
                detected_at=created_at if is_claude_generated else None,
                created_at=created_at,
                explanations=[explanation],
            )
            self._analyses[analysis.id] = analysis
            return analysis.id, explanation

    def history(self, user_id, page, limit, filters):
        with self._lock:
            rows = [a for a in self._analyses.values() if a.user_id == user_id and filters.matches(a)]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        offset = (page - 1) * limit
        return HistoryPage(analyses=rows[offset:offset + limit], page=page, limit=limit, total=len(rows))

    def get(self, user_id, analysis_id):
        with self._lock:
            analysis = self._analyses.get(analysis_id)
        if analysis is None or analysis.user_id != user_id:
            return None
        return analysis

    def delete(self, user_id, analysis_id):
        with self._lock:
            analysis = self._analyses.get(analysis_id)
            if analysis is None or analysis.user_id != user_id:
                return False
            del self._analyses[analysis_id]
            return True


class SqlAnalysisRepository:
    """code_analyses / explanations tables through SQLAlchemy Core."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @staticmethod
    def _explanation_from_row(row) -> Explanation:
        return Explanation(
            id=row.id,
            level=row.level,
            content=row.content,
            summary=row.summary,
            key_concepts=row.key_concepts or [],
            complexity_score=row.complexity_score,
            ai_model=row.ai_model,
            generation_time_ms=row.generation_time_ms,
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _analysis_from_row(row, explanation_rows) -> CodeAnalysis:
        return CodeAnalysis(
            id=row.id,
            user_id=row.user_id,
            code=row.code,
            code_hash=row.code_hash,
            language=row.language,
            file_name=row.file_name,
            file_path=row.file_path,
            is_claude_generated=bool(row.is_claude_generated),
            detection_method=row.detection_method,
            detected_at=_aware(row.detected_at),
            created_at=_aware(row.created_at),
            explanations=[SqlAnalysisRepository._explanation_from_row(e) for e in explanation_rows],
        )

    def _explanations_for(self, conn, analysis_ids: List[str]) -> Dict[str, list]:
        grouped: Dict[str, list] = {analysis_id: [] for analysis_id in analysis_ids}
        if not analysis_ids:
            return grouped
        rows = conn.execute(
            select(explanations)
            .where(explanations.c.code_analysis_id.in_(analysis_ids))
            .order_by(explanations.c.created_at)
        ).fetchall()
        for row in rows:
            grouped[row.code_analysis_id].append(row)
        return grouped

    def _find_analysis_id(self, conn, user_id: str, code_hash: str, language: str) -> Optional[str]:
        return conn.execute(
            select(code_analyses.c.id)
            .where(code_analyses.c.user_id == user_id)
            .where(code_analyses.c.code_hash == code_hash)
            .where(code_analyses.c.language == language)
            .order_by(code_analyses.c.created_at)
            .limit(1)
        ).scalar_one_or_none()

    def find_cached(self, user_id, code_hash, language, level):
        with self._engine.connect() as conn:
            analysis_id = self._find_analysis_id(conn, user_id, code_hash, language)
            if analysis_id is None:
                return None
            row = conn.execute(
                select(explanations)
                .where(explanations.c.code_analysis_id == analysis_id)
                .where(explanations.c.level == level)
            ).first()
        if row is None:
            return None
        return analysis_id, self._explanation_from_row(row)

    def save(self, *, user_id, code, code_hash, language, level, result, file_name=None,
             file_path=None, is_claude_generated=False, detection_method="manual"):
        explanation = _new_explanation(level, result)
        with self._engine.begin() as conn:
            analysis_id = self._find_analysis_id(conn, user_id, code_hash, language)
            if analysis_id is None:
                analysis_id = str(uuid.uuid4())
                created_at = _now()
                conn.execute(
                    insert(code_analyses).values(
                        id=analysis_id,
                        user_id=user_id,
                        code=code,
                        code_hash=code_hash,
                        language=language,
                        file_name=file_name,
                        file_path=file_path,
                        is_claude_generated=is_claude_generated,
                        detection_method=detection_method,
                        detected_at=created_at if is_claude_generated else None,
                        created_at=created_at,
                    )
                )
            conn.execute(
                insert(explanations).values(
                    id=explanation.id,
                    code_analysis_id=analysis_id,
                    level=level,
                    content=explanation.content,
                    summary=explanation.summary,
                    key_concepts=explanation.key_concepts,
                    complexity_score=explanation.complexity_score,
                    ai_model=explanation.ai_model,
                    generation_time_ms=explanation.generation_time_ms,
                    created_at=explanation.created_at,
                )
            )
        return analysis_id, explanation

    def history(self, user_id, page, limit, filters):
        conditions = [code_analyses.c.user_id == user_id]
        if filters.language:
            conditions.append(code_analyses.c.language == filters.language)
        if filters.is_claude_generated is not None:
            conditions.append(code_analyses.c.is_claude_generated == filters.is_claude_generated)
        if filters.start_date:
            conditions.append(code_analyses.c.created_at >= filters.start_date)
        if filters.end_before:
            conditions.append(code_analyses.c.created_at < filters.end_before)
        where = and_(*conditions)

        with self._engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(code_analyses).where(where)).scalar_one()
            rows = conn.execute(
                select(code_analyses)
                .where(where)
                .order_by(code_analyses.c.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).fetchall()
            grouped = self._explanations_for(conn, [row.id for row in rows])

        return HistoryPage(
            analyses=[self._analysis_from_row(row, grouped[row.id]) for row in rows],
            page=page,
            limit=limit,
            total=int(total),
        )

    def get(self, user_id, analysis_id):
        with self._engine.connect() as conn:
            row = conn.execute(
                select(code_analyses)
                .where(code_analyses.c.id == analysis_id)
                .where(code_analyses.c.user_id == user_id)
            ).first()
            if row is None:
                return None
            grouped = self._explanations_for(conn, [row.id])
        return self._analysis_from_row(row, grouped[row.id])

    def delete(self, user_id, analysis_id):
        with self._engine.begin() as conn:
            owned = conn.execute(
                select(code_analyses.c.id)
                .where(code_analyses.c.id == analysis_id)
                .where(code_analyses.c.user_id == user_id)
            ).scalar_one_or_none()
            if owned is None:
                return False
            # SQLite does not enforce ON DELETE CASCADE without a pragma
            conn.execute(delete(explanations).where(explanations.c.code_analysis_id == analysis_id))
            conn.execute(delete(code_analyses).where(code_analyses.c.id == analysis_id))
        return True
