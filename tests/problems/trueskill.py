import torch as t

from epgraph import (
    Model,
    Gaussian,
    Gamma,
    Random,
    GaussianFromMeanAndPrecision,
    ConstrainPositive,
    ConstrainBetween,
    ConstrainTrue,
    Switch,
)


def trueskill_model(draws=False, thresholds=False, reviews=True):
    """
    Skill model for games between players, scored by raters.

    Within each game, players are listed in finishing order, and each player's performance must beat
    the next one's (or, with ``draws``, lie within a rater-specific margin of it when their ranks are equal).
    Optionally, reviews give each player an ordinal rating, related to a continuous rating through
    rater-specific ordered thresholds.
    """
    m = Model("TrueSkill")

    GameCount = m.declare_observed("GameCount")
    PlayerCount = m.declare_observed("PlayerCount")
    RaterCount = m.declare_observed("RaterCount")

    player = m.declare_range("player", PlayerCount)
    rater = m.declare_range("rater", RaterCount)
    game = m.declare_range("game", GameCount)
    m.mark_sequential(game)

    GamePlayerCount = m.declare_observed("GamePlayerCount", (game,))
    gamePlayer = m.declare_range("gamePlayer", GamePlayerCount[game])

    PlayerIndices = m.declare_observed("PlayerIndices", (game, gamePlayer), value_range=player)
    RaterIndices = m.declare_observed("RaterIndices", (game,), value_range=rater)
    PlayerSkillsPriorPrecisionPrior = m.declare_observed("PlayerSkillsPriorPrecisionPrior", (player,), dtype=Gamma)

    skills = m.declare_variable_array("PlayerSkills", Gaussian, (player,))
    skillsPrecision = m.declare_variable_array("PlayerSkillsPriorPrecision", Gamma, (player,))
    raterPrecisions = m.declare_variable_array("RaterPrecisions", Gamma, (rater,))
    perf = m.declare_variable_array("PlayerPerformances", Gaussian, (game, gamePlayer))

    with m.foreach(player):
        m.add_factor(Random(skillsPrecision[player], PlayerSkillsPriorPrecisionPrior[player]))
        m.add_factor(GaussianFromMeanAndPrecision(skills[player], 25., skillsPrecision[player]))

    with m.foreach(rater):
        m.add_factor(Random(raterPrecisions[rater], Gamma.from_shape_and_rate(10., 1.)))

    if draws:
        RaterDrawMarginPrior = m.declare_observed("RaterDrawMarginPrior", (rater,), dtype=Gaussian)
        PlayerRanks = m.declare_observed("PlayerRanks", (game, gamePlayer))
        margins = m.declare_variable_array("RaterDrawMargins", Gaussian, (rater,))
        with m.foreach(rater):
            m.add_factor(Random(margins[rater], RaterDrawMarginPrior[rater]))
            m.add_factor(ConstrainPositive(margins[rater]))

    with m.foreach(game, gamePlayer):
        m.add_factor(GaussianFromMeanAndPrecision(
            perf[game, gamePlayer],
            skills[PlayerIndices[game, gamePlayer]],
            raterPrecisions[RaterIndices[game]],
        ))
        with m.condition(gamePlayer > 0):
            diff = perf[game, gamePlayer - 1] - perf[game, gamePlayer]
            if draws:
                margin = margins[RaterIndices[game]]
                isDraw = PlayerRanks[game, gamePlayer].eq(PlayerRanks[game, gamePlayer - 1])
                m.add_factor(Switch(isDraw, {
                    True: ConstrainBetween(diff, -margin, margin),
                    False: ConstrainTrue(diff > margin),
                }))
            else:
                m.add_factor(ConstrainPositive(diff))

    if thresholds:
        RaterThresholdCount = m.declare_observed("RaterThresholdCount")
        raterThreshold = m.declare_range("raterThreshold", RaterThresholdCount)
        ratingValue = m.declare_range("repetitionRatingValue", RaterThresholdCount - 1)
        RaterThresholdsPrior = m.declare_observed("RaterThresholdsPrior", (rater, raterThreshold), dtype=Gaussian)
        raterThresholds = m.declare_variable_array("RaterThresholds", Gaussian, (rater, raterThreshold))

        with m.foreach(rater, raterThreshold):
            m.add_factor(Random(raterThresholds[rater, raterThreshold], RaterThresholdsPrior[rater, raterThreshold]))
            with m.condition(raterThreshold > 0):
                m.add_factor(ConstrainPositive(raterThresholds[rater, raterThreshold] - raterThresholds[rater, raterThreshold - 1]))

    if reviews:
        ReviewCount = m.declare_observed("ReviewCount")
        review = m.declare_range("review", ReviewCount, sequential=True)
        ReviewRepetitionIndices = m.declare_observed("ReviewRepetitionIndices", (review,), value_range=player)
        ReviewRaterIndices = m.declare_observed("ReviewRaterIndices", (review,), value_range=rater)
        continuousRatings = m.declare_variable_array("ContinuousRatings", Gaussian, (review,))
        if thresholds:
            ReviewRepetitionRatings = m.declare_observed("ReviewRepetitionRatings", (review,), value_range=ratingValue)

        with m.foreach(review):
            m.add_factor(GaussianFromMeanAndPrecision(
                continuousRatings[review],
                skills[ReviewRepetitionIndices[review]],
                raterPrecisions[ReviewRaterIndices[review]],
            ))
            if thresholds:
                r = ReviewRaterIndices[review]
                rating = ReviewRepetitionRatings[review]
                m.add_factor(Switch(rating, ConstrainBetween(
                    continuousRatings[review],
                    raterThresholds[r, rating],
                    raterThresholds[r, rating + 1],
                )))
            else:
                m.add_factor(ConstrainPositive(continuousRatings[review]))

    return m


def game_values(player_count, games, raters=None, prior_precision=1.):
    """
    Observed values for a list of games, each given as the list of its players in finishing order.
    """
    raters = [0 for _ in games] if raters is None else raters
    return {
        "GameCount": len(games),
        "PlayerCount": player_count,
        "RaterCount": max(raters) + 1,
        "GamePlayerCount": [len(g) for g in games],
        "PlayerIndices": games,
        "RaterIndices": raters,
        "PlayerSkillsPriorPrecisionPrior": Gamma.point_mass(t.full((player_count,), prior_precision)),
    }


no_reviews = {
    "ReviewCount": 0,
    "ReviewRepetitionIndices": [],
    "ReviewRaterIndices": [],
}


def bind_all(algorithm, values):
    for (name, value) in values.items():
        algorithm.bind_observed(name, value)
    return algorithm
