from . import utils as utils
from ._lie_group_variables import SE2Var as SE2Var
from ._lie_group_variables import SE3Var as SE3Var
from ._lie_group_variables import SO2Var as SO2Var
from ._lie_group_variables import SO3Var as SO3Var
from ._linear_solve import ColPivQR as ColPivQR
from ._linear_solve import col_piv_qr as col_piv_qr
from ._linear_solve import solve_least_squares as solve_least_squares
from ._linear_solve import solve_ls as solve_ls
from ._linear_solve import solve_ls_min_scaled_norm as solve_ls_min_scaled_norm
from ._linear_solve import solve_ls_with_factor as solve_ls_with_factor
from ._lmpar import lmpar as lmpar
from ._lmpar import lmpar_from_factor as lmpar_from_factor
from ._solvers import MinimizeOptions as MinimizeOptions
from ._solvers import MinimizeResult as MinimizeResult
from ._solvers import MinimizeStatus as MinimizeStatus
from ._solvers import TrustRegionConfig as TrustRegionConfig
from ._solvers import minimize as minimize
from ._variables import DimensionMismatchError as DimensionMismatchError
from ._variables import Var as Var
from ._variables import VarPack as VarPack
from ._variables import VectorVar as VectorVar
from ._variables import wrt as wrt
